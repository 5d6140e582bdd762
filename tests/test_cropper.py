"""Tests for BackgroundCropper and BoundingBox."""

import numpy as np
import pytest

from thigh_analyzer import BackgroundCropper, BoundingBox, EmptyForegroundError


class TestBoundingBox:
    """Test BoundingBox helpers."""

    def test_from_mask_is_inclusive(self):
        mask = np.zeros((6, 8), dtype=bool)
        mask[2, 3] = mask[4, 6] = True
        box = BoundingBox.from_mask(mask)
        assert box.as_tuple() == (2, 4, 3, 6)
        assert box.shape == (3, 4)

    def test_empty_mask_raises(self):
        with pytest.raises(ValueError):
            BoundingBox.from_mask(np.zeros((3, 3), dtype=bool))

    def test_embed_places_sub_mask_at_offset(self):
        box = BoundingBox(1, 2, 2, 4)
        full = box.embed(np.ones(box.shape, dtype=bool), (5, 6))
        assert full.sum() == 6
        assert full[1:3, 2:5].all()


class TestBackgroundCropper:
    """Test BackgroundCropper.crop."""

    def test_crop_is_minimal(self):
        """Every row/column outside the box holds only background."""
        rng = np.random.default_rng(3)
        image = np.zeros((30, 40), dtype=np.int64)
        image[5:20, 8:31] = rng.integers(0, 50, size=(15, 23))
        image[5, 8] = image[19, 30] = 40

        result = BackgroundCropper(background=0).crop(image)
        box = result.box
        foreground = image > 1

        assert foreground[box.row_min].any() and foreground[box.row_max].any()
        assert foreground[:, box.col_min].any() and foreground[:, box.col_max].any()
        assert not foreground[:box.row_min].any()
        assert not foreground[box.row_max + 1:].any()
        assert not foreground[:, :box.col_min].any()
        assert not foreground[:, box.col_max + 1:].any()
        np.testing.assert_array_equal(result.image, image[box.slices])

    def test_margin_pixels_are_background(self):
        """Values up to background + 1 do not extend the box."""
        image = np.zeros((10, 10), dtype=np.int64)
        image[0, 0] = 1
        image[4:6, 4:6] = 2
        box = BackgroundCropper(background=0).crop(image).box
        assert box.as_tuple() == (4, 5, 4, 5)

    def test_interior_background_is_kept(self, phantom):
        """Cropping is geometric; the zero marrow stays zero."""
        result = BackgroundCropper(background=0).crop(phantom.image)
        assert result.box.as_tuple() == (3, 47, 3, 97)
        assert (result.image == 0).sum() > 0

    def test_blank_image_raises(self):
        with pytest.raises(EmptyForegroundError):
            BackgroundCropper(background=0).crop(np.ones((8, 8), dtype=np.int64))

    def test_nonzero_background(self):
        image = np.full((6, 6), 100, dtype=np.int64)
        image[2, 3] = 150
        result = BackgroundCropper(background=100).crop(image)
        assert result.box.as_tuple() == (2, 2, 3, 3)
        assert result.image.shape == (1, 1)

    def test_cropped_image_is_read_only(self, phantom):
        result = BackgroundCropper(background=0).crop(phantom.image)
        with pytest.raises(ValueError):
            result.image[0, 0] = 5
