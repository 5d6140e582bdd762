"""
Thigh Muscle Cross-Sectional Area Analyzer - Version 1.0
=========================================================
A research-grade Python module for segmenting mid-thigh muscle,
subcutaneous fat, femur and intramuscular noncontractile tissue on a
single T1 FFE MRI slice, and reporting cross-sectional areas per thigh.

PIPELINE (once per thigh, left and right are independent):
- Crop the zero background that the scanner writes around the body
- Pick two intensity cut points with a two-level Otsu criterion
- Grow subcutaneous fat and femur from operator-supplied seeds
- Grow muscle from one or more seeds on a binarized muscle-band image
- Fill cavities to recover femur marrow and the solid muscle envelope
- Split muscle into flexor and extensor groups with operator polygons
- Convert pixel counts to cm^2 using the DICOM PixelSpacing

Imaging Notes:
    DICOM images are not rescaled. Only raw stored pixel values are used,
    as produced by Philips 3T T1 FFE acquisitions where the background
    is set to zero by the scanner.

Author: Thigh CSA Analyst Project
License: BSD 3-Clause
"""

import logging
import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from fractions import Fraction
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pydicom
from pydicom.misc import is_dicom
from scipy import ndimage
from skimage import io
from skimage.segmentation import flood

logger = logging.getLogger(__name__)

SIDES = ('left', 'right')
MUSCLE_GROUPS = ('flexor', 'extensor')

PHYSICAL_UNIT = 'cm^2'
PIXEL_UNIT = 'pixel^2'

# Background components are 8-connected, the complement of the
# 4-connected rule used to grow tissue regions.
_BACKGROUND_STRUCTURE = ndimage.generate_binary_structure(2, 2)

Seed = Tuple[int, int]


class SegmentationError(Exception):
    """Base class for failures that abort processing of the current image."""


class EmptyForegroundError(SegmentationError):
    """The image has no pixel brighter than the background sentinel."""


class RetryableInputError(SegmentationError):
    """Operator input (seed or polygon) was unusable and can be re-supplied."""


class SeedOutOfBoundsError(RetryableInputError):
    """A seed point lies outside the image grid."""


class EmptyRegionError(RetryableInputError):
    """A grown region has zero pixels."""


class DegeneratePolygonError(RetryableInputError):
    """A polygon has fewer than three vertices."""


class MissingPixelSpacingWarning(UserWarning):
    """Pixel spacing is unavailable; areas are reported in pixel^2."""


class TissueType(Enum):
    """Tissue classes delimited by the threshold pair.

    Intensity classes on T1 FFE:
        - BONE: at or below the lower cut (cortical bone is dark)
        - MUSCLE: above the lower cut, up to and including the upper cut
        - FAT: above the upper cut (fat and marrow are bright)
        - NONCONTRACTILE: fat-range tissue inside the muscle envelope
    """
    BONE = "Femur (cortex and marrow)"
    MUSCLE = "Skeletal Muscle"
    FAT = "Subcutaneous Fat"
    NONCONTRACTILE = "Noncontractile Elements"


@dataclass
class SegmentationConfig:
    """Tunable parameters of the segmentation pipeline.

    Attributes:
        tolerance: Maximum intensity difference from the seed for a pixel
            to join a grown region
        background_margin: Pixels must exceed background + margin to count
            as foreground when cropping
        muscle_seeds: Number of muscle seeds expected per thigh ("bulk"
            and "gracilis" by default)
    """
    tolerance: int = 1
    background_margin: int = 1
    muscle_seeds: int = 2

    def __post_init__(self):
        if self.tolerance < 0:
            raise ValueError(f"tolerance must be >= 0, got {self.tolerance}")
        if self.muscle_seeds < 1:
            raise ValueError(
                f"muscle_seeds must be >= 1, got {self.muscle_seeds}"
            )


@dataclass(frozen=True)
class IntensityRange:
    """Observed intensity range of the original, uncropped image."""
    rmin: int
    rmax: int

    def __post_init__(self):
        if not self.rmin < self.rmax:
            raise ValueError(
                f"Intensity range requires rmin < rmax, got "
                f"[{self.rmin}, {self.rmax}]"
            )

    @classmethod
    def from_image(cls, image: np.ndarray) -> 'IntensityRange':
        return cls(int(image.min()), int(image.max()))


@dataclass(frozen=True)
class ThresholdPair:
    """Two intensity cut points splitting the histogram into three classes.

    Attributes:
        low: Upper bound (inclusive) of the bone class
        high: Upper bound (inclusive) of the muscle class
    """
    low: int
    high: int

    def __post_init__(self):
        if self.low > self.high:
            raise ValueError(
                f"Threshold pair requires low <= high, got "
                f"({self.low}, {self.high})"
            )


@dataclass(frozen=True)
class BoundingBox:
    """Inclusive row/column bounds of a rectangular image region."""
    row_min: int
    row_max: int
    col_min: int
    col_max: int

    @classmethod
    def from_mask(cls, mask: np.ndarray) -> 'BoundingBox':
        """Smallest box containing every True pixel of ``mask``."""
        rows = np.flatnonzero(np.any(mask, axis=1))
        cols = np.flatnonzero(np.any(mask, axis=0))
        if rows.size == 0:
            raise ValueError("Cannot bound an empty mask")
        return cls(int(rows[0]), int(rows[-1]), int(cols[0]), int(cols[-1]))

    @property
    def slices(self) -> Tuple[slice, slice]:
        return (slice(self.row_min, self.row_max + 1),
                slice(self.col_min, self.col_max + 1))

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.row_max - self.row_min + 1,
                self.col_max - self.col_min + 1)

    def embed(self, sub_mask: np.ndarray,
              full_shape: Tuple[int, int]) -> np.ndarray:
        """Place a box-shaped mask back into a full-size, all-False grid."""
        full = np.zeros(full_shape, dtype=bool)
        full[self.slices] = sub_mask
        return full

    def as_tuple(self) -> Tuple[int, int, int, int]:
        return (self.row_min, self.row_max, self.col_min, self.col_max)


@dataclass(frozen=True)
class CropResult:
    """Bounding box of the foreground and the image cropped to it."""
    box: BoundingBox
    image: np.ndarray = field(repr=False)


@dataclass(frozen=True)
class ThighSeeds:
    """Operator-supplied seed points for one thigh, in cropped-image (row, col).

    Attributes:
        fat: Seed within the subcutaneous fat
        bone: Seed within the femur cortex
        muscle: One seed per muscle island (e.g. "bulk" then "gracilis")
    """
    fat: Seed
    bone: Seed
    muscle: Tuple[Seed, ...]


@dataclass(frozen=True, eq=False)
class ThighMasks:
    """Committed masks for one thigh, all in the cropped-image frame.

    Attributes:
        fat: Subcutaneous fat
        bone: Femur including marrow
        muscle: Whole contractile muscle, femur excluded
        muscle_envelope: Filled muscle minus femur
        noncontractile: Fat-range tissue inside the muscle envelope
        thigh_box: Bounding box of the fat mask; the frame polygons are
            digitized in
        flexor: Muscle inside the flexor polygon (None until committed)
        extensor: Muscle inside the extensor polygon (None until committed)
    """
    fat: np.ndarray = field(repr=False)
    bone: np.ndarray = field(repr=False)
    muscle: np.ndarray = field(repr=False)
    muscle_envelope: np.ndarray = field(repr=False)
    noncontractile: np.ndarray = field(repr=False)
    thigh_box: BoundingBox
    flexor: Optional[np.ndarray] = field(default=None, repr=False)
    extensor: Optional[np.ndarray] = field(default=None, repr=False)

    @property
    def is_partitioned(self) -> bool:
        return self.flexor is not None and self.extensor is not None


@dataclass(frozen=True)
class AreaRecord:
    """A cross-sectional area and the unit it is expressed in."""
    value: float
    unit: str


@dataclass(frozen=True)
class ThighAreas:
    """Cross-sectional areas for one thigh.

    Attributes:
        muscle: Whole muscle (flexors, extensors and any unassigned muscle)
        flexor: Hamstrings, hip adductors, gracilis and sartorius
        extensor: Quadriceps
        fat: Subcutaneous fat
        noncontractile: Intramuscular noncontractile elements
        bone: Femur including marrow
    """
    muscle: AreaRecord
    flexor: AreaRecord
    extensor: AreaRecord
    fat: AreaRecord
    noncontractile: AreaRecord
    bone: AreaRecord


@dataclass(frozen=True)
class ImageReport:
    """One complete result record for an image.

    Only built once both thighs are segmented and all four polygons are
    committed, so a report is never partial.
    """
    subject_id: str
    subject_number: str
    image_name: str
    mri_date: str
    analysis_date: str
    thresholds: ThresholdPair
    intensity_range: IntensityRange
    crop_box: BoundingBox
    thigh_boxes: Dict[str, BoundingBox]
    areas: Dict[str, ThighAreas]
    unit: str

    def as_record(self) -> Dict[str, Union[str, float, int]]:
        """Flatten to one spreadsheet row keyed by the column headers."""
        left, right = self.areas['left'], self.areas['right']
        return {
            'Subj ID': self.subject_id,
            'Subj #': self.subject_number,
            'MRI Date': self.mri_date,
            'Analysis Date': self.analysis_date,
            'L Mus CSA Ext': left.extensor.value,
            'R Mus CSA Ext': right.extensor.value,
            'L Mus CSA Flex': left.flexor.value,
            'R Mus CSA Flex': right.flexor.value,
            'L Mus CSA total': left.muscle.value,
            'R Mus CSA total': right.muscle.value,
            'L SubFat CSA': left.fat.value,
            'R SubFat CSA': right.fat.value,
            'L Non Con CSA': left.noncontractile.value,
            'R Non Con CSA': right.noncontractile.value,
            'L Bone CSA': left.bone.value,
            'R Bone CSA': right.bone.value,
            'Units': self.unit,
            'Threshold Low': self.thresholds.low,
            'Threshold High': self.thresholds.high,
        }


@dataclass
class OverlayColors:
    """RGB color definitions for tissue overlay visualization.

    Colors are defined as RGB tuples normalized to [0, 1] range.
    """
    muscle: Tuple[float, float, float] = (1.0, 0.0, 0.0)          # Red
    fat: Tuple[float, float, float] = (0.0, 0.7, 0.0)             # Green
    noncontractile: Tuple[float, float, float] = (1.0, 1.0, 0.0)  # Yellow
    bone: Tuple[float, float, float] = (0.0, 0.4, 1.0)            # Blue


def _freeze(array: np.ndarray) -> np.ndarray:
    array.setflags(write=False)
    return array


def _as_intensity_image(raw: np.ndarray) -> np.ndarray:
    image = np.asarray(raw)
    if image.ndim == 3:
        # Assume all channels are equal (gray scale)
        image = image[..., 0]
    if image.ndim != 2:
        raise ValueError(f"Expected a 2D image, got shape {image.shape}")
    if not np.issubdtype(image.dtype, np.integer):
        raise ValueError(
            f"Expected integer intensities, got dtype {image.dtype}"
        )
    return _freeze(image.astype(np.int64))


class ImageLoader:
    """Loads a single MRI slice and its pixel spacing.

    DICOM files are read with pydicom and their raw stored values are
    used without modality rescaling. Other formats (TIFF, PNG, JPEG) are
    read with scikit-image and carry no spacing information.

    Attributes:
        image_path: Source file path (None for in-memory images)
        image_name: Name used to label results
        dicom_data: The loaded pydicom dataset, if any
        image: Read-only 2D int64 intensity array
        pixel_spacing: (row, column) spacing in mm, if known
        pixel_area_cm2: Area of a single pixel in cm^2, if known
    """

    def __init__(self,
                 image_path: Optional[str] = None,
                 *,
                 image: Optional[np.ndarray] = None,
                 pixel_area_cm2: Optional[float] = None,
                 image_name: Optional[str] = None):
        """Load from ``image_path`` or wrap an in-memory ``image``.

        Args:
            image_path: Path to a DICOM or standard image file
            image: Intensity array, used instead of a file
            pixel_area_cm2: Pixel area for in-memory images
            image_name: Label for the results (defaults to the file stem)

        Raises:
            ValueError: If both or neither of image_path and image are
                given, or the image is not a 2D integer grid
            FileNotFoundError: If the file doesn't exist
        """
        if (image_path is None) == (image is None):
            raise ValueError("Provide exactly one of image_path or image")
        if pixel_area_cm2 is not None and pixel_area_cm2 <= 0:
            raise ValueError(
                f"pixel_area_cm2 must be positive, got {pixel_area_cm2}"
            )

        self.image_path = image_path
        self.dicom_data: Optional[pydicom.Dataset] = None
        self.pixel_spacing: Optional[Tuple[float, float]] = None
        self.pixel_area_cm2 = pixel_area_cm2

        if image_path is not None:
            self.image_name = image_name or Path(image_path).stem
            self._load_file()
        else:
            self.image_name = image_name or 'image'
            self.image = _as_intensity_image(image)

    @classmethod
    def from_array(cls,
                   image: np.ndarray,
                   pixel_area_cm2: Optional[float] = None,
                   image_name: str = 'image') -> 'ImageLoader':
        """Wrap an already decoded intensity array."""
        return cls(image=image, pixel_area_cm2=pixel_area_cm2,
                   image_name=image_name)

    def _load_file(self) -> None:
        path = Path(self.image_path)
        if not path.exists():
            raise FileNotFoundError(f"Image file not found: {path}")

        if is_dicom(str(path)):
            self.dicom_data = pydicom.dcmread(str(path))
            raw = self.dicom_data.pixel_array

            # PixelSpacing is [row_spacing, column_spacing] in mm
            spacing = getattr(self.dicom_data, 'PixelSpacing', None)
            if spacing is not None:
                self.pixel_spacing = tuple(float(x) for x in spacing)
                self.pixel_area_cm2 = (
                    self.pixel_spacing[0] * self.pixel_spacing[1]
                ) / 100.0
        else:
            raw = io.imread(str(path))

        self.image = _as_intensity_image(raw)

    @property
    def series_date(self) -> str:
        """MRI series date as ``dd-Mon-YYYY``, or '' when unavailable."""
        if self.dicom_data is None:
            return ''
        raw = getattr(self.dicom_data, 'SeriesDate', '')
        if not raw:
            return ''
        try:
            return datetime.strptime(str(raw), '%Y%m%d').strftime('%d-%b-%Y')
        except ValueError:
            logger.warning(f"Unparseable SeriesDate {raw!r} in {self.image_name}")
            return ''


class BackgroundCropper:
    """Removes the uniform background border around the body.

    A pixel is foreground when its value exceeds ``background + margin``.
    The crop is purely geometric: background pixels inside the bounding
    box are kept.
    """

    def __init__(self, background: int, margin: int = 1):
        self.background = int(background)
        self.margin = int(margin)

    def foreground(self, image: np.ndarray) -> np.ndarray:
        return np.asarray(image, dtype=np.int64) > self.background + self.margin

    def crop(self, image: np.ndarray) -> CropResult:
        """Crop ``image`` to the minimal box holding every foreground pixel.

        Raises:
            EmptyForegroundError: If no pixel exceeds the background level
        """
        foreground = self.foreground(image)
        if not foreground.any():
            raise EmptyForegroundError(
                f"No pixel exceeds background level "
                f"{self.background} + {self.margin}"
            )
        box = BoundingBox.from_mask(foreground)
        return CropResult(box=box, image=_freeze(np.array(image[box.slices])))


class HistogramThresholder:
    """Two-level Otsu thresholding over the distinct intensity levels.

    The three classes induced by a cut pair ``(low, high)`` are
    ``v <= low``, ``low < v <= high`` and ``v > high``. The pair that
    maximizes the between-class variance is returned; because the total
    mean is fixed, this is the pair maximizing ``sum(S_k**2 / W_k)`` where
    ``S_k`` and ``W_k`` are the intensity sum and pixel count of class k.

    Cut points are always intensity levels present in the image and every
    class is non-empty. Ties resolve to the lexicographically smallest
    pair. Cost is quadratic in the number of distinct levels.
    """

    # Relative score gap below which two pairs are re-compared exactly
    TIE_TOLERANCE = 1e-9

    @staticmethod
    def _exact_score(weights: List[int], sums: List[int],
                     i: int, j: int) -> Fraction:
        total_weight, total_sum = weights[-1], sums[-1]
        return (Fraction(sums[i] ** 2, weights[i])
                + Fraction((sums[j] - sums[i]) ** 2, weights[j] - weights[i])
                + Fraction((total_sum - sums[j]) ** 2,
                           total_weight - weights[j]))

    @staticmethod
    def histogram(image: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Distinct intensity levels (ascending) and their pixel counts."""
        return np.unique(np.asarray(image, dtype=np.int64), return_counts=True)

    def compute(self, image: np.ndarray) -> ThresholdPair:
        """Compute the threshold pair for ``image``.

        Args:
            image: Cropped grayscale image

        Returns:
            ThresholdPair with ``image.min() <= low <= high <= image.max()``
        """
        levels, counts = self.histogram(image)
        if levels.size == 0:
            raise ValueError("Cannot threshold an empty image")
        if levels.size < 3:
            # Too few levels for three non-empty classes
            return ThresholdPair(int(levels[0]), int(levels[0]))

        weights = np.cumsum(counts, dtype=np.float64)
        sums = np.cumsum(counts * levels.astype(np.float64))
        total_weight, total_sum = weights[-1], sums[-1]

        n_levels = levels.size
        best_score = -np.inf
        # (score, i, j) of every pair within rounding distance of the best
        candidates: List[Tuple[float, int, int]] = []
        for i in range(n_levels - 2):
            j = np.arange(i + 1, n_levels - 1)
            w0, s0 = weights[i], sums[i]
            w1, s1 = weights[j] - w0, sums[j] - s0
            w2, s2 = total_weight - weights[j], total_sum - sums[j]
            score = s0 ** 2 / w0 + s1 ** 2 / w1 + s2 ** 2 / w2

            best_score = max(best_score, float(score.max()))
            cutoff = best_score - self.TIE_TOLERANCE * abs(best_score)
            candidates = [c for c in candidates if c[0] >= cutoff]
            candidates += [(float(score[k]), i, int(j[k]))
                           for k in np.flatnonzero(score >= cutoff)]

        # Rounding can reorder exact ties, so the near-maximal pairs are
        # compared exactly. Candidates are in (i, j) order and max() keeps
        # the first of equal scores.
        int_weights = [int(w) for w in np.cumsum(counts)]
        int_sums = [int(s) for s in np.cumsum(counts * levels)]
        _, low, high = max(
            candidates,
            key=lambda c: self._exact_score(int_weights, int_sums, c[1], c[2])
        )
        thresholds = ThresholdPair(int(levels[low]), int(levels[high]))
        logger.debug(f"Otsu thresholds over {n_levels} levels: {thresholds}")
        return thresholds


def apply_thresholds(image: np.ndarray,
                     thresholds: ThresholdPair,
                     intensity_range: IntensityRange) -> np.ndarray:
    """Flatten the bone and fat classes to the range extremes.

    Bone-class pixels become ``rmin`` and fat-class pixels become ``rmax``;
    muscle-class pixels keep their continuous tone.
    """
    source = np.asarray(image, dtype=np.int64)
    thresholded = source.copy()
    thresholded[source <= thresholds.low] = intensity_range.rmin
    thresholded[source > thresholds.high] = intensity_range.rmax
    return _freeze(thresholded)


def binarize_muscle_band(thresholded: np.ndarray,
                         thresholds: ThresholdPair,
                         intensity_range: IntensityRange) -> np.ndarray:
    """Build the muscle-candidate image used for connectivity-only growth.

    Fat-class pixels are zeroed and every muscle-class pixel is forced to
    ``rmax``, so the muscle band becomes one flat plateau.
    """
    source = np.asarray(thresholded, dtype=np.int64)
    band = (source > thresholds.low) & (source <= thresholds.high)
    binarized = source.copy()
    binarized[source == intensity_range.rmax] = 0
    binarized[band] = intensity_range.rmax
    return _freeze(binarized)


def _check_seed(seed: Sequence[float], shape: Tuple[int, ...]) -> Seed:
    if len(seed) != 2:
        raise SeedOutOfBoundsError(f"Seed must be a (row, col) pair, got {seed!r}")
    row, col = (int(round(float(v))) for v in seed)
    if not (0 <= row < shape[0] and 0 <= col < shape[1]):
        raise SeedOutOfBoundsError(
            f"Seed ({row}, {col}) is outside the {shape[0]}x{shape[1]} image"
        )
    return row, col


def grow_region(image: np.ndarray,
                seed: Sequence[float],
                tolerance: int = 1) -> np.ndarray:
    """Grow the 4-connected region around ``seed`` within ``tolerance``.

    A pixel joins when its intensity differs from the seed's by at most
    ``tolerance`` and it is orthogonally adjacent to a pixel already in
    the region. Pixels failing the test block growth past them.

    Args:
        image: Source intensity image (not modified)
        seed: (row, col) seed point
        tolerance: Inclusive intensity tolerance

    Returns:
        Boolean mask of the connected region containing the seed

    Raises:
        SeedOutOfBoundsError: If the seed lies outside the image
    """
    source = np.asarray(image, dtype=np.int64)
    point = _check_seed(seed, source.shape)
    return flood(source, point, connectivity=1, tolerance=tolerance)


def fill_cavities(mask: np.ndarray) -> np.ndarray:
    """Fill every background component that does not reach the border."""
    return ndimage.binary_fill_holes(np.asarray(mask, dtype=bool),
                                     structure=_BACKGROUND_STRUCTURE)


def _as_polygon(vertices: Iterable[Sequence[float]]) -> np.ndarray:
    polygon = np.asarray(vertices, dtype=np.float64)
    if polygon.ndim != 2 or polygon.shape[1] != 2:
        raise DegeneratePolygonError(
            f"Polygon vertices must be (x, y) pairs, got shape {polygon.shape}"
        )
    if len(polygon) > 1 and np.array_equal(polygon[0], polygon[-1]):
        # Explicitly closed polygon
        polygon = polygon[:-1]
    if len(polygon) < 3:
        raise DegeneratePolygonError(
            f"Polygon needs at least 3 vertices, got {len(polygon)}"
        )
    return polygon


def polygon_mask(vertices: Iterable[Sequence[float]],
                 shape: Tuple[int, int],
                 eps: float = 1e-9) -> np.ndarray:
    """Rasterize a closed polygon onto a grid.

    Pixel ``(r, c)`` covers ``[c, c+1] x [r, r+1]`` in (x, y) polygon
    coordinates, and is marked when its centre ``(c + 0.5, r + 0.5)`` is
    inside by the even-odd crossing rule or lies on an edge.
    Self-intersecting polygons are resolved by the even-odd rule.

    Args:
        vertices: Sequence of at least three (x, y) vertices
        shape: (rows, cols) of the target grid
        eps: Distance tolerance for the on-edge test

    Returns:
        Boolean mask of shape ``shape``

    Raises:
        DegeneratePolygonError: If fewer than three vertices are given
    """
    polygon = _as_polygon(vertices)
    rows, cols = shape
    py, px = np.mgrid[0:rows, 0:cols].astype(np.float64) + 0.5

    inside = np.zeros((rows, cols), dtype=bool)
    on_edge = np.zeros((rows, cols), dtype=bool)

    for (x0, y0), (x1, y1) in zip(polygon, np.roll(polygon, -1, axis=0)):
        if y0 != y1:
            straddles = (y0 > py) != (y1 > py)
            x_cross = x0 + (py - y0) * (x1 - x0) / (y1 - y0)
            inside ^= straddles & (px < x_cross)

        length = max(np.hypot(x1 - x0, y1 - y0), 1.0)
        cross = (x1 - x0) * (py - y0) - (y1 - y0) * (px - x0)
        within = (
            (px >= min(x0, x1) - eps) & (px <= max(x0, x1) + eps) &
            (py >= min(y0, y1) - eps) & (py <= max(y0, y1) + eps)
        )
        on_edge |= within & (np.abs(cross) <= eps * length)

    return inside | on_edge


def partition_mask(mask: np.ndarray,
                   vertices: Iterable[Sequence[float]],
                   box: Optional[BoundingBox] = None
                   ) -> Tuple[np.ndarray, np.ndarray]:
    """Split ``mask`` into the parts inside and outside a polygon.

    Args:
        mask: Tissue mask to split
        vertices: Polygon in the frame of ``box`` (or of ``mask`` if None)
        box: Sub-region of ``mask`` the polygon was digitized on

    Returns:
        (inside, outside), disjoint and together equal to ``mask``
    """
    mask = np.asarray(mask, dtype=bool)
    if box is None:
        region = polygon_mask(vertices, mask.shape)
    else:
        region = box.embed(polygon_mask(vertices, box.shape), mask.shape)
    return mask & region, mask & ~region


class ROIState(Enum):
    """States of the polygon accept/retry cycle."""
    DIGITIZING = "digitizing"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMMITTED = "committed"


class PolygonROI:
    """Accept/retry cycle for one operator-drawn muscle-group polygon.

    The operator submits a polygon, inspects the preview partition, and
    either rejects it (back to digitizing) or commits it. Only the
    partition is recomputed on retry; no earlier pipeline step reruns.

    Example usage:
        roi = PolygonROI("left flexor")
        roi.submit([(10, 5), (40, 5), (40, 30), (10, 30)])
        inside, outside = roi.preview(masks.muscle, masks.thigh_box)
        roi.commit()
    """

    def __init__(self, name: str):
        self.name = name
        self.state = ROIState.DIGITIZING
        self._vertices: Optional[np.ndarray] = None

    def __repr__(self) -> str:
        return f"PolygonROI({self.name!r}, state={self.state.value})"

    @property
    def vertices(self) -> Optional[np.ndarray]:
        return None if self._vertices is None else self._vertices.copy()

    @property
    def is_committed(self) -> bool:
        return self.state is ROIState.COMMITTED

    def submit(self, vertices: Iterable[Sequence[float]]) -> None:
        """Offer a polygon for confirmation.

        Raises:
            RuntimeError: If the polygon was already committed
            DegeneratePolygonError: If the polygon has < 3 vertices; the
                state is left unchanged
        """
        if self.is_committed:
            raise RuntimeError(f"{self.name} polygon is already committed")
        self._vertices = _as_polygon(vertices)
        self.state = ROIState.AWAITING_CONFIRMATION

    def preview(self, mask: np.ndarray,
                box: Optional[BoundingBox] = None
                ) -> Tuple[np.ndarray, np.ndarray]:
        """Partition ``mask`` with the current polygon."""
        if self._vertices is None:
            raise RuntimeError(f"No polygon submitted for {self.name}")
        return partition_mask(mask, self._vertices, box)

    def reject(self) -> None:
        if self.state is not ROIState.AWAITING_CONFIRMATION:
            raise RuntimeError(
                f"Cannot reject {self.name} in state {self.state.value}"
            )
        self._vertices = None
        self.state = ROIState.DIGITIZING

    def commit(self) -> None:
        if self.state is not ROIState.AWAITING_CONFIRMATION:
            raise RuntimeError(
                f"Cannot commit {self.name} in state {self.state.value}"
            )
        self.state = ROIState.COMMITTED


class ThighSegmenter:
    """Segments the tissues of one thigh from operator seeds.

    All masks are computed on the cropped image grid and returned as
    new read-only arrays; the shared images are never modified, so the
    two thighs of an image can be segmented independently.

    The sequence per thigh is:
    1. Fat grown on the thresholded image; its bounding box is the thigh
       view the polygons are drawn on
    2. Femur grown on the thresholded image, then cavity-filled to add
       the marrow
    3. Muscle grown from each seed on the binarized muscle-band image and
       unioned (islands nobody seeds are not included)
    4. Muscle envelope = filled muscle minus femur
    5. Noncontractile = envelope pixels brighter than the upper cut
    6. Flexor/extensor = muscle inside each committed polygon

    Attributes:
        side: 'left' or 'right'
        cropped: Cropped source image
        thresholded: Cropped image with bone/fat classes flattened
        binarized: Muscle-band plateau image
        thresholds: Threshold pair of the image
        intensity_range: Range of the original image
        config: SegmentationConfig
    """

    def __init__(self,
                 side: str,
                 cropped: np.ndarray,
                 thresholded: np.ndarray,
                 binarized: np.ndarray,
                 thresholds: ThresholdPair,
                 intensity_range: IntensityRange,
                 config: Optional[SegmentationConfig] = None):
        self.side = side
        self.cropped = cropped
        self.thresholded = thresholded
        self.binarized = binarized
        self.thresholds = thresholds
        self.intensity_range = intensity_range
        self.config = config or SegmentationConfig()

    def _grow(self, image: np.ndarray, seed: Seed,
              tissue: TissueType) -> np.ndarray:
        region = grow_region(image, seed, self.config.tolerance)
        if not region.any():
            raise EmptyRegionError(
                f"{self.side} {tissue.value.lower()} region is empty"
            )
        return region

    def segment_fat(self, seed: Seed) -> Tuple[np.ndarray, BoundingBox]:
        """Grow the subcutaneous fat and bound the thigh view."""
        fat = self._grow(self.thresholded, seed, TissueType.FAT)
        return _freeze(fat), BoundingBox.from_mask(fat)

    def segment_bone(self, seed: Seed) -> np.ndarray:
        """Grow the femur cortex and fill it to include the marrow."""
        cortex = self._grow(self.thresholded, seed, TissueType.BONE)
        return _freeze(fill_cavities(cortex))

    def segment_muscle(self, seeds: Sequence[Seed]) -> np.ndarray:
        """Union of the muscle regions grown from every seed.

        Raises:
            ValueError: If the number of seeds differs from the configuration
            EmptyRegionError: If a seed is not on muscle-band tissue
        """
        if len(seeds) != self.config.muscle_seeds:
            raise ValueError(
                f"Expected {self.config.muscle_seeds} {self.side} muscle "
                f"seeds, got {len(seeds)}"
            )

        muscle = np.zeros(self.binarized.shape, dtype=bool)
        for seed in seeds:
            row, col = _check_seed(seed, self.binarized.shape)
            if self.binarized[row, col] != self.intensity_range.rmax:
                raise EmptyRegionError(
                    f"{self.side} muscle seed ({row}, {col}) is not on "
                    f"muscle-intensity tissue"
                )
            muscle |= self._grow(self.binarized, (row, col),
                                 TissueType.MUSCLE)
        return _freeze(muscle)

    def segment(self, seeds: ThighSeeds) -> ThighMasks:
        """Run every seeded step and derive the composite masks.

        Returns:
            ThighMasks without the flexor/extensor partition
        """
        fat, thigh_box = self.segment_fat(seeds.fat)
        bone = self.segment_bone(seeds.bone)
        grown_muscle = self.segment_muscle(seeds.muscle)

        # Whole muscle area, then remove femur and marrow
        envelope = fill_cavities(grown_muscle) & ~bone
        muscle = grown_muscle & ~bone
        if not muscle.any():
            raise EmptyRegionError(
                f"{self.side} muscle region is empty once the femur is removed"
            )

        noncontractile = envelope & (self.cropped > self.thresholds.high)

        logger.info(
            f"Segmented {self.side} thigh: fat={int(fat.sum())} px, "
            f"bone={int(bone.sum())} px, muscle={int(muscle.sum())} px, "
            f"noncontractile={int(noncontractile.sum())} px"
        )
        return ThighMasks(
            fat=fat,
            bone=bone,
            muscle=_freeze(muscle),
            muscle_envelope=_freeze(envelope),
            noncontractile=_freeze(noncontractile),
            thigh_box=thigh_box,
        )

    @staticmethod
    def commit_partition(masks: ThighMasks,
                         flexor_roi: PolygonROI,
                         extensor_roi: PolygonROI) -> ThighMasks:
        """Attach flexor/extensor masks from two committed polygons.

        Both partitions are taken from the same whole-muscle mask, so
        their union need not cover it.
        """
        for roi in (flexor_roi, extensor_roi):
            if not roi.is_committed:
                raise RuntimeError(f"{roi.name} polygon is not committed")
        flexor, _ = flexor_roi.preview(masks.muscle, masks.thigh_box)
        extensor, _ = extensor_roi.preview(masks.muscle, masks.thigh_box)
        return replace(masks, flexor=_freeze(flexor), extensor=_freeze(extensor))


class AreaCalculator:
    """Converts mask pixel counts into cross-sectional areas.

    The area calculation uses:
        Area (cm^2) = pixel_count * pixel_area_cm2

    When the pixel area is unknown the pixel count itself is reported in
    pixel^2, and a MissingPixelSpacingWarning is raised once, when the
    calculator is created. Create one calculator per image.

    Attributes:
        pixel_area_cm2: Area of a single pixel in cm^2, or None
        unit: Unit of every area this calculator returns
    """

    def __init__(self, pixel_area_cm2: Optional[float], image_name: str = 'image'):
        self.pixel_area_cm2 = pixel_area_cm2
        if pixel_area_cm2 is None:
            self.unit = PIXEL_UNIT
            message = (
                f"Pixel size not found for {image_name}! Cross-sectional "
                f"areas will be in {PIXEL_UNIT} and not {PHYSICAL_UNIT}!"
            )
            logger.warning(message)
            warnings.warn(message, MissingPixelSpacingWarning, stacklevel=2)
        else:
            self.unit = PHYSICAL_UNIT

    def area(self, mask: np.ndarray) -> AreaRecord:
        """Area of the True pixels of ``mask``.

        Raises:
            ValueError: If no mask is given
        """
        if mask is None:
            raise ValueError("Cannot measure the area of a missing mask")
        count = int(np.count_nonzero(mask))
        if self.pixel_area_cm2 is None:
            return AreaRecord(float(count), PIXEL_UNIT)
        return AreaRecord(count * self.pixel_area_cm2, PHYSICAL_UNIT)

    def thigh_areas(self, masks: ThighMasks) -> ThighAreas:
        """Calculate all areas for one thigh.

        Raises:
            RuntimeError: If the flexor/extensor partition is missing
        """
        if not masks.is_partitioned:
            raise RuntimeError("Flexor/extensor partition has not been committed")
        return ThighAreas(
            muscle=self.area(masks.muscle),
            flexor=self.area(masks.flexor),
            extensor=self.area(masks.extensor),
            fat=self.area(masks.fat),
            noncontractile=self.area(masks.noncontractile),
            bone=self.area(masks.bone),
        )


class Visualizer:
    """Generates visualization overlays for thigh segmentation results.

    Color scheme:
    - Muscle (Red)
    - Subcutaneous fat (Green)
    - Noncontractile elements (Yellow)
    - Femur and marrow (Blue)

    Attributes:
        image: Cropped intensity image
        masks: Committed ThighMasks per side
        intensity_range: Display window
        thresholds: Threshold pair shown on the histogram
        colors: OverlayColors object
    """

    # Paint order; later layers cover earlier ones
    LAYERS = (TissueType.FAT, TissueType.MUSCLE, TissueType.NONCONTRACTILE,
              TissueType.BONE)

    def __init__(self,
                 image: np.ndarray,
                 masks: Dict[str, ThighMasks],
                 intensity_range: IntensityRange,
                 thresholds: ThresholdPair,
                 colors: Optional[OverlayColors] = None):
        self.image = image
        self.masks = masks
        self.intensity_range = intensity_range
        self.thresholds = thresholds
        self.colors = colors or OverlayColors()

    def color_of(self, tissue: TissueType) -> Tuple[float, float, float]:
        return getattr(self.colors, tissue.name.lower())

    def legend_entries(self) -> List[Tuple[str, Tuple[float, float, float]]]:
        """(label, color) per tissue, topmost layer first."""
        return [(tissue.value, self.color_of(tissue))
                for tissue in reversed(self.LAYERS)]

    def generate_overlay(self,
                         sides: Optional[Sequence[str]] = None,
                         alpha: float = 1.0) -> np.ndarray:
        """Generate RGB overlay image with tissue colors.

        Args:
            sides: Thighs to paint (all segmented thighs if None)
            alpha: Opacity of tissue overlay (0-1)

        Returns:
            3-channel RGB numpy array over the cropped image
        """
        rmin, rmax = self.intensity_range.rmin, self.intensity_range.rmax
        windowed = np.clip((self.image - rmin) / float(rmax - rmin), 0, 1)
        rgb = np.stack([windowed] * 3, axis=-1)

        for side in sides or list(self.masks):
            masks = self.masks[side]
            for tissue in self.LAYERS:
                region = getattr(masks, tissue.name.lower())
                color = np.array(self.color_of(tissue))
                rgb[region] = alpha * color + (1 - alpha) * rgb[region]
        return rgb

    def save_overlay(self,
                     output_path: str,
                     dpi: int = 150,
                     title: str = 'Thigh Cross-Sectional Area Analysis',
                     **kwargs) -> None:
        """Save the overlay visualization to a file.

        Args:
            output_path: Path to save the image
            dpi: Resolution in dots per inch
            title: Figure title
            **kwargs: Arguments passed to generate_overlay
        """
        import matplotlib.pyplot as plt
        from matplotlib.patches import Patch

        overlay = self.generate_overlay(**kwargs)

        fig, ax = plt.subplots(figsize=(10, 10))
        ax.imshow(overlay)
        ax.axis('off')
        ax.set_title(title)

        legend_elements = [
            Patch(facecolor=color, label=label)
            for label, color in self.legend_entries()
        ]
        ax.legend(handles=legend_elements, loc='upper right')

        plt.tight_layout()
        plt.savefig(output_path, dpi=dpi, bbox_inches='tight')
        plt.close(fig)

    def save_histogram(self, output_path: str, dpi: int = 150) -> None:
        """Save the intensity histogram with both cut points marked."""
        import matplotlib.pyplot as plt

        levels, counts = HistogramThresholder.histogram(self.image)

        fig, ax = plt.subplots(figsize=(10, 6))
        ax.bar(levels, counts, width=1.0, color=(0.0, 0.0, 0.8))
        ax.axvline(self.thresholds.low, color='r', linewidth=1.0,
                   label=f"Lower threshold ({self.thresholds.low})")
        ax.axvline(self.thresholds.high, color=(0.0, 0.7, 0.0), linewidth=1.0,
                   label=f"Upper threshold ({self.thresholds.high})")
        ax.set_xlabel('Signal Intensity', fontweight='bold')
        ax.set_ylabel('Frequency', fontweight='bold')
        ax.set_title('T1 FFE Image Histogram', fontweight='bold')
        ax.legend(loc='upper right')

        plt.tight_layout()
        plt.savefig(output_path, dpi=dpi, bbox_inches='tight')
        plt.close(fig)


class ThighAnalyzer:
    """Main orchestrator for thigh cross-sectional area analysis.

    This class coordinates all analysis steps for one image:
    1. Image loading and pixel spacing lookup
    2. Background cropping
    3. Two-level Otsu thresholding
    4. Per-thigh seeded segmentation (fat, femur, muscle, noncontractile)
    5. Flexor/extensor partition through the polygon accept/retry cycle
    6. Area calculation and report generation
    7. Visualization generation

    Seeds are (row, col) in the cropped image. Polygons are (x, y) in the
    thigh view, the crop of the cropped image to that thigh's fat box.

    Example usage:
        analyzer = ThighAnalyzer("010_KF_Y1.dcm")
        analyzer.segment_thigh('left', ThighSeeds(fat, bone, (bulk, gracilis)))
        roi = analyzer.roi('left', 'flexor')
        roi.submit(points)
        roi.commit()
        ...
        report = analyzer.analyze()

    Attributes:
        loader: ImageLoader instance
        config: SegmentationConfig
        intensity_range: Range of the original image
        crop: CropResult of the background crop
        thresholds: ThresholdPair computed from the cropped image
        thresholded: Cropped image with bone/fat classes flattened
        binarized: Muscle-band plateau image
        area_calculator: AreaCalculator for this image
        segmenters: ThighSegmenter per side
    """

    def __init__(self,
                 image_source: Union[str, ImageLoader],
                 config: Optional[SegmentationConfig] = None,
                 subject_id: Optional[str] = None,
                 subject_number: Optional[str] = None):
        """Initialize the analyzer and run the image-wide steps.

        Args:
            image_source: Path to the image file, or a prepared ImageLoader
            config: Segmentation parameters (defaults if None)
            subject_id: Subject identifier (defaults to the image name)
            subject_number: Subject number (defaults to the first three
                characters of the subject identifier)

        Raises:
            EmptyForegroundError: If the image is blank
        """
        self.config = config or SegmentationConfig()
        if isinstance(image_source, ImageLoader):
            self.loader = image_source
        else:
            self.loader = ImageLoader(image_source)

        self.subject_id = subject_id or self.loader.image_name
        self.subject_number = subject_number or self.subject_id[:3]

        image = self.loader.image
        cropper = BackgroundCropper(int(image.min()),
                                    self.config.background_margin)
        self.crop = cropper.crop(image)
        self.intensity_range = IntensityRange.from_image(image)

        self.thresholds = HistogramThresholder().compute(self.crop.image)
        logger.info(
            f"{self.loader.image_name}: crop {self.crop.box.as_tuple()}, "
            f"thresholds ({self.thresholds.low}, {self.thresholds.high})"
        )
        self.thresholded = apply_thresholds(
            self.crop.image, self.thresholds, self.intensity_range
        )
        self.binarized = binarize_muscle_band(
            self.thresholded, self.thresholds, self.intensity_range
        )

        self.area_calculator = AreaCalculator(self.loader.pixel_area_cm2,
                                              self.loader.image_name)

        self.segmenters = {
            side: ThighSegmenter(side, self.crop.image, self.thresholded,
                                 self.binarized, self.thresholds,
                                 self.intensity_range, self.config)
            for side in SIDES
        }
        self._rois = {
            (side, group): PolygonROI(f"{side} {group}")
            for side in SIDES for group in MUSCLE_GROUPS
        }

        # Results storage
        self._masks: Dict[str, ThighMasks] = {}
        self._report: Optional[ImageReport] = None
        self._visualizer: Optional[Visualizer] = None

    @staticmethod
    def _check_side(side: str) -> None:
        if side not in SIDES:
            raise ValueError(f"Unknown side {side!r}; expected one of {SIDES}")

    def segment_thigh(self, side: str, seeds: ThighSeeds) -> ThighMasks:
        """Segment one thigh; a repeated call replaces the earlier result.

        Raises:
            RetryableInputError: If a seed is unusable
        """
        self._check_side(side)
        masks = self.segmenters[side].segment(seeds)
        self._masks[side] = masks
        self._report = None
        self._visualizer = None
        return masks

    def segment_thighs(self,
                       seeds: Dict[str, ThighSeeds],
                       parallel: bool = False) -> Dict[str, ThighMasks]:
        """Segment both thighs, optionally on two worker threads.

        Both sides must finish before this returns; if either raises, the
        exception propagates and neither result is stored.
        """
        for side in seeds:
            self._check_side(side)

        if parallel:
            with ThreadPoolExecutor(max_workers=len(SIDES)) as executor:
                futures = {
                    side: executor.submit(self.segmenters[side].segment, s)
                    for side, s in seeds.items()
                }
                results = {side: f.result() for side, f in futures.items()}
        else:
            results = {
                side: self.segmenters[side].segment(s)
                for side, s in seeds.items()
            }

        self._masks.update(results)
        self._report = None
        self._visualizer = None
        return results

    def masks(self, side: str) -> ThighMasks:
        """Latest masks for ``side`` (partitioned once analyze() has run)."""
        self._check_side(side)
        if side not in self._masks:
            raise RuntimeError(f"Call segment_thigh('{side}', ...) first")
        return self._masks[side]

    def roi(self, side: str, group: str) -> PolygonROI:
        """The accept/retry cycle for one muscle-group polygon."""
        self._check_side(side)
        if group not in MUSCLE_GROUPS:
            raise ValueError(
                f"Unknown muscle group {group!r}; expected one of {MUSCLE_GROUPS}"
            )
        return self._rois[(side, group)]

    def preview_partition(self, side: str,
                          group: str) -> Tuple[np.ndarray, np.ndarray]:
        """Inside/outside split of the muscle by the submitted polygon."""
        masks = self.masks(side)
        return self.roi(side, group).preview(masks.muscle, masks.thigh_box)

    def thigh_view(self, side: str) -> np.ndarray:
        """The cropped image restricted to the thigh box (polygon frame)."""
        return self.crop.image[self.masks(side).thigh_box.slices]

    def analyze(self, parallel: bool = False) -> ImageReport:
        """Partition both thighs, compute areas and build the report.

        Args:
            parallel: Finalize the two thighs on separate threads

        Returns:
            The ImageReport for this image

        Raises:
            RuntimeError: If a thigh is unsegmented or a polygon uncommitted
        """
        missing = [side for side in SIDES if side not in self._masks]
        missing += [roi.name for roi in self._rois.values()
                    if not roi.is_committed]
        if missing:
            raise RuntimeError(
                f"Cannot analyze {self.loader.image_name}; incomplete: "
                f"{', '.join(missing)}"
            )

        def finalize(side: str) -> Tuple[ThighMasks, ThighAreas]:
            masks = ThighSegmenter.commit_partition(
                self._masks[side],
                self._rois[(side, 'flexor')],
                self._rois[(side, 'extensor')],
            )
            return masks, self.area_calculator.thigh_areas(masks)

        if parallel:
            with ThreadPoolExecutor(max_workers=len(SIDES)) as executor:
                finished = dict(zip(SIDES, executor.map(finalize, SIDES)))
        else:
            finished = {side: finalize(side) for side in SIDES}

        for side, (masks, _) in finished.items():
            self._masks[side] = masks

        self._report = ImageReport(
            subject_id=self.subject_id,
            subject_number=self.subject_number,
            image_name=self.loader.image_name,
            mri_date=self.loader.series_date,
            analysis_date=date.today().strftime('%d-%b-%Y'),
            thresholds=self.thresholds,
            intensity_range=self.intensity_range,
            crop_box=self.crop.box,
            thigh_boxes={side: self._masks[side].thigh_box for side in SIDES},
            areas={side: areas for side, (_, areas) in finished.items()},
            unit=self.area_calculator.unit,
        )
        self._visualizer = Visualizer(self.crop.image, dict(self._masks),
                                      self.intensity_range, self.thresholds)
        return self._report

    @property
    def report(self) -> ImageReport:
        if self._report is None:
            raise RuntimeError("Call analyze() before getting the report")
        return self._report

    def get_results_dict(self) -> Dict[str, Union[str, float, int]]:
        """Get analysis results as a flat dictionary.

        Useful for exporting to CSV or a spreadsheet row.

        Raises:
            RuntimeError: If analyze() hasn't been called
        """
        return self.report.as_record()

    def get_overlay_image(self, **kwargs) -> np.ndarray:
        """Get the RGB overlay image array.

        Raises:
            RuntimeError: If analyze() hasn't been called
        """
        if self._visualizer is None:
            raise RuntimeError("Call analyze() before generating visualization")
        return self._visualizer.generate_overlay(**kwargs)

    def save_visualization(self, output_path: str, **kwargs) -> None:
        """Save the overlay visualization to a file.

        Raises:
            RuntimeError: If analyze() hasn't been called
        """
        if self._visualizer is None:
            raise RuntimeError("Call analyze() before saving visualization")
        self._visualizer.save_overlay(output_path, **kwargs)

    def save_histogram(self, output_path: str, **kwargs) -> None:
        """Save the thresholded intensity histogram to a file."""
        Visualizer(self.crop.image, {}, self.intensity_range,
                   self.thresholds).save_histogram(output_path, **kwargs)


# Convenience function for quick analysis
def analyze_thigh_slice(image_path: str,
                        seeds: Dict[str, ThighSeeds],
                        polygons: Dict[str, Dict[str, Sequence[Sequence[float]]]],
                        output_image_path: Optional[str] = None,
                        config: Optional[SegmentationConfig] = None,
                        subject_id: Optional[str] = None) -> ImageReport:
    """Convenience function for non-interactive single-slice analysis.

    Every polygon is accepted as given.

    Args:
        image_path: Path to the image file (or an ImageLoader)
        seeds: ThighSeeds per side
        polygons: polygons[side][group] as (x, y) vertices in the thigh view
        output_image_path: Optional path to save visualization
        config: Segmentation parameters
        subject_id: Subject identifier

    Returns:
        The ImageReport
    """
    analyzer = ThighAnalyzer(image_path, config=config, subject_id=subject_id)
    analyzer.segment_thighs(seeds)

    for side in SIDES:
        for group in MUSCLE_GROUPS:
            roi = analyzer.roi(side, group)
            roi.submit(polygons[side][group])
            roi.commit()

    report = analyzer.analyze()
    if output_image_path:
        analyzer.save_visualization(output_image_path)
    return report
