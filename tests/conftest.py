"""Pytest configuration and shared fixtures."""

import matplotlib
import pytest

matplotlib.use('Agg')

from tests.utils import half_polygons, make_thigh_phantom  # noqa: E402
from thigh_analyzer import (  # noqa: E402
    MUSCLE_GROUPS,
    SIDES,
    ImageLoader,
    ThighAnalyzer,
)


@pytest.fixture
def phantom():
    """Plain two-thigh phantom."""
    return make_thigh_phantom()


@pytest.fixture
def analyzer(phantom):
    """Analyzer over the phantom with 0.25 cm^2 pixels."""
    loader = ImageLoader.from_array(phantom.image, pixel_area_cm2=0.25,
                                    image_name='001_phantom')
    return ThighAnalyzer(loader)


@pytest.fixture
def segmented_analyzer(analyzer, phantom):
    """Analyzer with both thighs segmented and half-plane polygons committed."""
    analyzer.segment_thighs({side: phantom.seeds(side) for side in SIDES})
    flexor, extensor = half_polygons()
    for side in SIDES:
        for group, polygon in zip(MUSCLE_GROUPS, (flexor, extensor)):
            roi = analyzer.roi(side, group)
            roi.submit(polygon)
            roi.commit()
    return analyzer
