"""
Tests for Layer 2 — rotation and cutout cropping.
"""
import numpy as np
import pytest

from layer2_readjustment import (
    DOCUMENT_FRAME_RATIO,
    CutoutRegion,
    compute_cutout_region,
    crop_to_cutout,
    rotate_bitmap,
)


class TestCutoutGeometry:
    """Test the ID-3 ratio cutout computation."""

    def test_ratio(self):
        assert DOCUMENT_FRAME_RATIO == 1.42

    def test_portrait_mrz_band(self):
        """1000x1600: crop 900 x 633.8, MRZ offset 380.3."""
        region = compute_cutout_region(1000, 1600, crop_to_mrz=True)
        assert region == CutoutRegion(left=50, top=863, width=900, height=253)
        assert region.right <= 1000
        assert region.bottom <= 1600

    def test_portrait_whole_document(self):
        region = compute_cutout_region(1000, 1600, crop_to_mrz=False)
        assert region == CutoutRegion(left=50, top=483, width=900, height=633)

    def test_landscape_whole_document(self):
        """1280x720: crop height 540, width 766.8."""
        region = compute_cutout_region(1280, 720, crop_to_mrz=False)
        assert region == CutoutRegion(left=256, top=90, width=766, height=540)

    @pytest.mark.parametrize("crop_to_mrz", [True, False])
    def test_square_frame_has_no_region(self, crop_to_mrz):
        """A 1065px wide crop does not fit a 1000px frame."""
        assert compute_cutout_region(1000, 1000, crop_to_mrz) is None

    def test_slightly_wide_frame_has_no_region(self):
        """1060x1000 is still narrower than the 1065px crop."""
        assert compute_cutout_region(1060, 1000, crop_to_mrz=True) is None

    def test_wide_enough_frame_fits(self):
        region = compute_cutout_region(1070, 1000, crop_to_mrz=False)
        assert region == CutoutRegion(left=2, top=125, width=1065, height=750)

    @pytest.mark.parametrize("crop_to_mrz", [True, False])
    def test_regions_always_inside_bitmap(self, crop_to_mrz):
        sizes = [(w, h) for w in (1, 2, 3, 7, 16, 99, 480, 1000, 1920)
                 for h in (1, 2, 3, 7, 16, 99, 640, 1080, 1600)]
        for width, height in sizes:
            region = compute_cutout_region(width, height, crop_to_mrz)
            if region is None:
                continue
            assert region.left >= 0 and region.top >= 0
            assert region.width > 0 and region.height > 0
            assert region.left + region.width <= width
            assert region.top + region.height <= height

    def test_one_pixel_has_no_region(self):
        assert compute_cutout_region(1, 1, crop_to_mrz=True) is None


class TestCropToCutout:
    """Test best-effort cropping."""

    def test_crop_returns_band_copy(self):
        image = np.arange(1600 * 1000 * 3, dtype=np.uint32).astype(np.uint8).reshape(1600, 1000, 3)
        cropped = crop_to_cutout(image, crop_to_mrz=True)

        assert cropped.shape == (253, 900, 3)
        assert np.array_equal(cropped, image[863:1116, 50:950])
        assert not np.shares_memory(cropped, image)

    @pytest.mark.parametrize("crop_to_mrz", [True, False])
    def test_square_frame_is_not_cropped(self, crop_to_mrz):
        image = np.zeros((1000, 1000, 3), dtype=np.uint8)
        assert crop_to_cutout(image, crop_to_mrz) is image

    @pytest.mark.parametrize("width,height", [(1, 1), (2, 1), (1, 2), (3, 3)])
    def test_tiny_images_fall_back_to_original(self, width, height):
        image = np.zeros((height, width, 3), dtype=np.uint8)
        result = crop_to_cutout(image, crop_to_mrz=True)
        assert result.shape[0] <= height and result.shape[1] <= width
        if compute_cutout_region(width, height, True) is None:
            assert result is image

    def test_never_raises_for_small_sizes(self):
        for width in range(1, 12):
            for height in range(1, 12):
                for crop_to_mrz in (True, False):
                    image = np.zeros((height, width, 3), dtype=np.uint8)
                    result = crop_to_cutout(image, crop_to_mrz)
                    assert result.size > 0


class TestRotateBitmap:
    """Test clockwise rotation."""

    @pytest.fixture
    def marked(self):
        image = np.zeros((2, 3, 3), dtype=np.uint8)
        image[0, 0] = (255, 0, 0)
        return image

    def test_zero_is_same_object(self, marked):
        assert rotate_bitmap(marked, 0) is marked
        assert rotate_bitmap(marked, 360) is marked

    def test_90_clockwise(self, marked):
        rotated = rotate_bitmap(marked, 90)
        assert rotated.shape == (3, 2, 3)
        # Top-left moves to top-right when turning clockwise
        assert tuple(rotated[0, -1]) == (255, 0, 0)

    def test_180(self, marked):
        rotated = rotate_bitmap(marked, 180)
        assert rotated.shape == (2, 3, 3)
        assert tuple(rotated[-1, -1]) == (255, 0, 0)

    def test_270(self, marked):
        rotated = rotate_bitmap(marked, 270)
        assert rotated.shape == (3, 2, 3)
        assert tuple(rotated[-1, 0]) == (255, 0, 0)

    def test_negative_and_wrapped_angles(self, marked):
        assert np.array_equal(rotate_bitmap(marked, -90), rotate_bitmap(marked, 270))
        assert np.array_equal(rotate_bitmap(marked, 450), rotate_bitmap(marked, 90))

    def test_arbitrary_angle_expands_canvas(self):
        image = np.full((100, 100, 3), 255, dtype=np.uint8)
        rotated = rotate_bitmap(image, 45)
        assert rotated.shape[0] == rotated.shape[1] == 141
        assert rotated is not image
