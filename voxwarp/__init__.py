__version__ = '0.1.0'

import logging

logging.getLogger(__name__).addHandler(logging.NullHandler())

from . import caching
from . import config
from . import logging_config
from . import parallel

from . import errors
from .errors import GeometryError
from .errors import SingularMatrixError
from .errors import DegenerateJacobianError

from . import space
from .space import Space

from . import frame
from .frame import SpatialFrame
from .frame import translation_matrix
from .frame import scaling_matrix
from .frame import rotation_matrix_z
from .frame import angles_to_rotation_matrix
from .frame import compose_affine

from . import volume
from .volume import VoxelVolume
from .volume import DirectionalIterator
from .volume import volumes_equal

from . import interpolation
from .interpolation import Interpolator
from .interpolation import NearestInterpolator
from .interpolation import LinearInterpolator
from .interpolation import get_interpolator

from . import transform
from .transform import Transform
from .transform import AffineTransform

from . import rbf
from .rbf import GaussianRbf
from .rbf import RbfTransform

from . import ddf
from .ddf import DenseDeformableField

from . import inverse
from .inverse import InverseResult
from .inverse import InverseSolver

from . import resampling
from .resampling import ResamplingMapper
from .resampling import resample

from . import mpr
from .mpr import Slice
from .mpr import Mpr
