"""Shared test utilities: a synthetic two-thigh T1 phantom."""
from dataclasses import dataclass, field
from typing import Dict, Tuple

import numpy as np

from thigh_analyzer import ThighSeeds

FAT, MUSCLE, BONE = 200, 100, 10

SHAPE = (50, 100)
THIGH_CENTERS = {'left': (25, 25), 'right': (25, 75)}
# Foreground (anything brighter than 1) spans rows 3..47, cols 3..97
CROP_OFFSET = (3, 3)
CROP_SLICES = (slice(3, 48), slice(3, 98))

FAT_RADIUS, MUSCLE_RADIUS, BONE_RADIUS, MARROW_RADIUS = 22, 16, 6, 2


@dataclass
class ThighPhantom:
    """Phantom image plus ground-truth masks (full frame) per side."""
    image: np.ndarray
    regions: Dict[str, Dict[str, np.ndarray]] = field(default_factory=dict)
    island: bool = False

    def crop(self, mask: np.ndarray) -> np.ndarray:
        return mask[CROP_SLICES]

    @staticmethod
    def to_crop(point: Tuple[int, int]) -> Tuple[int, int]:
        return point[0] - CROP_OFFSET[0], point[1] - CROP_OFFSET[1]

    def seeds(self, side: str) -> ThighSeeds:
        """Seeds in the cropped frame: fat ring, femur cortex, two muscle seeds."""
        r, c = THIGH_CENTERS[side]
        second = (r, c - 19) if self.island else (r, c - 11)
        return ThighSeeds(
            fat=self.to_crop((r, c + 19)),
            bone=self.to_crop((r, c + 4)),
            muscle=(self.to_crop((r, c + 11)), self.to_crop(second)),
        )


def make_thigh_phantom(fat_spots: bool = False,
                       island: bool = False,
                       bright_marrow: bool = False) -> ThighPhantom:
    """Two concentric-ring thighs on a zero background.

    Each thigh is a fat ring (200) around a muscle annulus (100) around a
    femur cortex (10) with zero-valued marrow. ``fat_spots`` adds a 2x2
    block of fat inside each muscle annulus; ``island`` moves a 3x3 block
    of muscle into each fat ring, reachable only by its own seed.
    ``bright_marrow`` gives the marrow fat intensity, so only cavity
    filling can add it to the femur.
    """
    image = np.zeros(SHAPE, dtype=np.uint16)
    rows, cols = np.indices(SHAPE)
    phantom = ThighPhantom(image=image, island=island)

    for side, (cr, cc) in THIGH_CENTERS.items():
        d2 = (rows - cr) ** 2 + (cols - cc) ** 2
        fat = (d2 > MUSCLE_RADIUS ** 2) & (d2 <= FAT_RADIUS ** 2)
        muscle = (d2 > BONE_RADIUS ** 2) & (d2 <= MUSCLE_RADIUS ** 2)
        bone = d2 <= BONE_RADIUS ** 2
        cortex = bone & (d2 > MARROW_RADIUS ** 2)

        spots = np.zeros(SHAPE, dtype=bool)
        if fat_spots:
            spots[cr - 11:cr - 9, cc - 1:cc + 1] = True
        islet = np.zeros(SHAPE, dtype=bool)
        if island:
            islet[cr - 1:cr + 2, cc - 20:cc - 17] = True

        image[fat] = FAT
        image[muscle] = MUSCLE
        image[cortex] = BONE
        if bright_marrow:
            image[bone & ~cortex] = FAT
        image[spots] = FAT
        image[islet] = MUSCLE

        phantom.regions[side] = {
            'fat': fat & ~islet,
            'muscle': (muscle & ~spots) | islet,
            'annulus': muscle & ~spots,
            'bone': bone,
            'spots': spots,
            'island': islet,
        }
    return phantom


def half_polygons(size: int = 45, split: float = 22.0):
    """Flexor (left of ``split``) and extensor (right) polygons in a thigh view."""
    flexor = [(0, 0), (split, 0), (split, size), (0, size)]
    extensor = [(split, 0), (size, 0), (size, size), (split, size)]
    return flexor, extensor
