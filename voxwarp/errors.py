"""
Exceptions raised for invalid geometry.
"""

from __future__ import annotations


class GeometryError(ValueError):
    """
    Base class for errors caused by geometry that cannot be used, such as a
    voxel-to-world matrix that has no inverse.
    """


class SingularMatrixError(GeometryError):
    """
    Raised when a spatial frame or affine transform is constructed from a
    matrix that is not invertible.
    """


class DegenerateJacobianError(GeometryError):
    """
    Raised when the Jacobian of a transform cannot be inverted during a
    Newton step of the inverse solver.
    """
