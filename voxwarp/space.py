"""
Designators for the voxel-index and world coordinate spaces.
"""

from __future__ import annotations


space_lookup = {
    'voxel': 'V',
    'vox': 'V',
    'index': 'V',
    'world': 'W',
    'mm': 'W',
}

space_names = {'V': 'voxel', 'W': 'world'}


class Space:
    """
    Either the continuous voxel-index space of a volume or the world (mm) space
    its spatial frame maps into.
    """

    def __init__(self, space: Space | str) -> None:
        """
        Args:
            space (Space | str): Coordinate space. If string, can be 'voxel' or 'world'.
        """
        if isinstance(space, Space):
            self.code = space.code
        else:
            match = space_lookup.get(space)
            if match is None:
                raise ValueError(f'unknown space: {space}')
            self.code = match

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}('{space_names[self.code]}')"

    def __eq__(self, value: object) -> bool:
        if isinstance(value, Space):
            return self.code == value.code
        elif isinstance(value, str):
            return self.code == space_lookup.get(value)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.code)
