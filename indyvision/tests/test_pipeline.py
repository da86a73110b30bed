# indyvision/tests/test_pipeline.py
# Unit tests for core/pipeline.py with a recording backend, plus OpenCV integration

import os
import sys
import tempfile
import unittest

import cv2
import numpy as np

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..')))

from indyvision.core import backend as bk
from indyvision.core.backend import GeometricModel, ImagingBackend, Match, OpenCvBackend
from indyvision.core.errors import BackendFailure
from indyvision.core.params import (
    AdaptiveThresholdParams,
    BlobParams,
    EdgeParams,
    GeometricMatchParams,
    MorphologyParams,
    RoiParams,
    ThresholdParams,
)
from indyvision.core.pipeline import (
    COMPLETE_MESSAGE,
    MODEL_DEFINITION_MESSAGE,
    NO_IMAGE_MESSAGE,
    NO_MODEL_MESSAGE,
    Pipeline,
)
from indyvision.core.regions import RoiRect


class FakeBackend(ImagingBackend):
    """Numpy-only backend that records every primitive call.

    Names listed in fail_on raise BackendFailure instead of running.
    """

    def __init__(self):
        self.calls = []
        self.fail_on = set()
        self.images = {}
        self.search_result = []
        self.exports = []

    def _enter(self, name, *args):
        self.calls.append((name,) + args)
        if name in self.fail_on:
            raise BackendFailure(name, "injected")

    def names(self):
        return [c[0] for c in self.calls]

    def load_image(self, path):
        self._enter("load_image", path)
        if path not in self.images:
            raise BackendFailure("load_image", f"could not read image: {path}")
        return self.images[path].copy()

    def to_grayscale(self, img):
        self._enter("to_grayscale")
        if img.ndim == 3:
            img = img.mean(axis=2).astype(np.uint8)
        return img.copy()

    def binarize(self, img, mode, lo=0, hi=255, window=35):
        self._enter("binarize", mode, lo, hi, window)
        if mode == bk.RANGE:
            out = (img >= lo) & (img <= hi)
        elif mode == bk.BIMODAL:
            out = img > 127
        else:
            out = img > lo
        return out.astype(np.uint8) * 255

    def morph_op(self, img, op, iterations):
        self._enter("morph_op", op, iterations)
        return img.copy()

    def edge_filter(self, img, kind):
        self._enter("edge_filter", kind)
        return img.copy()

    def label(self, mask):
        self._enter("label")
        _, labels = cv2.connectedComponents((mask > 0).astype(np.uint8), connectivity=8)
        return labels.astype(np.int32)

    def define_model(self, img, smoothness):
        self._enter("define_model", smoothness)
        return GeometricModel(template=img.copy(), edges=255 - img, smoothness=float(smoothness))

    def geometric_search(self, model, img, min_score):
        self._enter("geometric_search", min_score)
        return list(self.search_result)

    def export_region(self, img, rect, path):
        self._enter("export_region", rect, path)
        self.exports.append((img, rect, path))

    def draw_blobs(self, img, drawings):
        self._enter("draw_blobs", len(drawings))
        return np.dstack([img, img, img])

    def draw_matches(self, img, matches):
        self._enter("draw_matches", len(matches))
        return np.dstack([img, img, img])


def _gradient(h=10, w=20):
    return (np.arange(h * w, dtype=np.int32).reshape(h, w) % 256).astype(np.uint8)


class PipelineTestCase(unittest.TestCase):

    def setUp(self):
        self.fake = FakeBackend()
        self.pipe = Pipeline(self.fake)


class TestNoImage(PipelineTestCase):

    def test_apply_without_source(self):
        self.assertEqual(self.pipe.apply("Threshold", ThresholdParams()), NO_IMAGE_MESSAGE)
        self.assertIsNone(self.pipe.source)
        self.assertIsNone(self.pipe.get_processed())
        self.assertEqual(self.fake.calls, [])

    def test_regions_without_source(self):
        self.assertFalse(self.pipe.crop(0, 0, 2, 2))
        self.assertFalse(self.pipe.save_region("x.png", 0, 0, 2, 2))
        self.assertEqual(self.fake.exports, [])


class TestSourceManagement(PipelineTestCase):

    def test_set_source_shows_original(self):
        img = _gradient()
        self.pipe.set_source(img)
        self.assertTrue(self.pipe.show_original)
        np.testing.assert_array_equal(self.pipe.current_image, img)
        np.testing.assert_array_equal(self.pipe.working, img)
        self.assertIsNot(self.pipe.working, self.pipe.source)

    def test_color_source_becomes_gray(self):
        self.pipe.set_source(np.zeros((4, 5, 3), np.uint8))
        self.assertEqual(self.pipe.source.shape, (4, 5))

    def test_load_image(self):
        self.fake.images["a.png"] = _gradient()
        self.pipe.load_image("a.png")
        np.testing.assert_array_equal(self.pipe.source, _gradient())

    def test_failed_load_keeps_previous_source(self):
        self.pipe.set_source(_gradient())
        with self.assertRaises(BackendFailure):
            self.pipe.load_image("missing.png")
        np.testing.assert_array_equal(self.pipe.source, _gradient())


class TestApply(PipelineTestCase):

    def setUp(self):
        super().setUp()
        self.img = _gradient()
        self.pipe.set_source(self.img)

    def test_source_never_mutated(self):
        for name, params in [("Threshold", ThresholdParams()), ("Morphology", MorphologyParams()),
                             ("Edge", EdgeParams()), ("Blob", BlobParams(min_area=1))]:
            self.pipe.apply(name, params)
            np.testing.assert_array_equal(self.pipe.source, self.img)

    def test_idempotent(self):
        p = ThresholdParams(threshold_min=60, threshold_max=120)
        self.pipe.apply("Threshold", p)
        first = self.pipe.get_processed().copy()
        self.pipe.apply("Threshold", p)
        np.testing.assert_array_equal(self.pipe.get_processed(), first)

    def test_result_depends_only_on_last_apply(self):
        self.pipe.apply("Threshold", ThresholdParams(threshold_min=100))
        self.pipe.apply("Edge", EdgeParams(strength=0))
        chained = self.pipe.get_processed().copy()

        fresh = Pipeline(FakeBackend())
        fresh.set_source(self.img)
        fresh.apply("Edge", EdgeParams(strength=0))
        np.testing.assert_array_equal(chained, fresh.get_processed())
        np.testing.assert_array_equal(chained, self.img)

    def test_unknown_operation_passes_through(self):
        before = len(self.fake.calls)
        self.assertEqual(self.pipe.apply("Sharpen", None), COMPLETE_MESSAGE)
        self.assertEqual(len(self.fake.calls), before)
        np.testing.assert_array_equal(self.pipe.get_processed(), self.img)
        self.assertFalse(self.pipe.show_original)

    def test_no_parameter_kinds_pass_through(self):
        self.assertEqual(self.pipe.apply("Roi", RoiParams()), COMPLETE_MESSAGE)
        self.assertEqual(self.pipe.apply("Gray", None), COMPLETE_MESSAGE)
        self.assertNotIn("binarize", self.fake.names())

    def test_mismatched_params_pass_through(self):
        self.assertEqual(self.pipe.apply("Blob", ThresholdParams()), COMPLETE_MESSAGE)
        self.assertNotIn("binarize", self.fake.names())

    def test_show_original_toggle_does_not_recompute(self):
        self.pipe.apply("Threshold", ThresholdParams())
        processed = self.pipe.get_processed()
        self.assertIs(self.pipe.current_image, processed)
        calls = len(self.fake.calls)
        self.pipe.show_original = True
        self.assertIs(self.pipe.current_image, self.pipe.get_original())
        self.pipe.show_original = False
        self.assertIs(self.pipe.current_image, processed)
        self.assertEqual(len(self.fake.calls), calls)

    def test_threshold_uses_range(self):
        self.pipe.apply("Threshold", ThresholdParams(threshold_min=10, threshold_max=20))
        self.assertEqual(self.fake.calls[-1][:4], ("binarize", bk.RANGE, 10, 20))

    def test_morphology_binarizes_then_repeats(self):
        self.pipe.apply("Morphology", MorphologyParams(iterations=2, kernel_size=5, mode="Dilate"))
        binarize, morph = self.fake.calls[-2], self.fake.calls[-1]
        self.assertEqual(binarize[:2], ("binarize", bk.BIMODAL))
        self.assertEqual(morph, ("morph_op", "Dilate", 4))

    def test_edge_strength_controls_post_binarize(self):
        self.pipe.apply("Edge", EdgeParams(method="Laplacian", strength=0))
        self.assertEqual(self.fake.calls[-1], ("edge_filter", "Laplacian"))
        self.pipe.apply("Edge", EdgeParams(method="Prewitt", strength=30))
        self.assertEqual(self.fake.calls[-2], ("edge_filter", "Prewitt"))
        self.assertEqual(self.fake.calls[-1][:3], ("binarize", bk.FIXED, 30))

    def test_adaptive_modes(self):
        self.pipe.apply("AdaptiveThreshold", AdaptiveThresholdParams(mode="Bright", offset=7, window_size=15))
        self.assertEqual(self.fake.calls[-1], ("binarize", bk.ADAPTIVE_GREATER, 7, 255, 15))
        self.pipe.apply("AdaptiveThreshold", AdaptiveThresholdParams(mode="Dark"))
        self.assertEqual(self.fake.calls[-1][:2], ("binarize", bk.ADAPTIVE_LESS))

    def test_backend_failure_keeps_source_and_display(self):
        self.pipe.apply("Threshold", ThresholdParams())
        shown = self.pipe.get_processed()
        self.fake.fail_on.add("binarize")
        message = self.pipe.apply("Threshold", ThresholdParams(threshold_min=1))
        self.assertEqual(message, "Threshold failed: binarize: injected")
        np.testing.assert_array_equal(self.pipe.source, self.img)
        self.assertIs(self.pipe.get_processed(), shown)
        self.assertTrue(self.pipe.last_failed)
        # the next successful apply recovers
        self.fake.fail_on.clear()
        self.assertEqual(self.pipe.apply("Threshold", ThresholdParams()), COMPLETE_MESSAGE)
        self.assertFalse(self.pipe.last_failed)


class TestBlobOperation(PipelineTestCase):

    def setUp(self):
        super().setUp()
        img = np.zeros((20, 20), np.uint8)
        img[2:4, 2:4] = 200
        img[10, 10] = 200
        self.pipe.set_source(img)

    def test_message_counts_kept_and_total(self):
        p = BlobParams(threshold_min=128, threshold_max=255, min_area=2, draw_box=False)
        self.assertEqual(self.pipe.apply("Blob", p), "Detected 1 blob(s) (2 total).")
        self.assertEqual(self.pipe.total_blobs, 2)
        self.assertEqual(self.pipe.blobs[0].area, 4)
        self.assertNotIn("draw_blobs", self.fake.names())

    def test_draw_box(self):
        p = BlobParams(threshold_min=128, threshold_max=255, min_area=1, draw_box=True)
        self.assertEqual(self.pipe.apply("Blob", p), "Detected 2 blob(s) (2 total).")
        self.assertEqual(self.fake.calls[-1], ("draw_blobs", 2))
        self.assertEqual(self.pipe.get_processed().ndim, 3)

    def test_results_cleared_by_next_apply(self):
        self.pipe.apply("Blob", BlobParams(threshold_min=128, min_area=1))
        self.pipe.apply("Threshold", ThresholdParams())
        self.assertEqual(self.pipe.blobs, [])
        self.assertEqual(self.pipe.total_blobs, 0)


class TestGeometricModelWorkflow(PipelineTestCase):

    def setUp(self):
        super().setUp()
        self.pipe.set_source(_gradient())
        self.model_img = np.full((6, 6), 40, np.uint8)

    def test_no_model(self):
        self.assertEqual(self.pipe.apply("GeometricMatch", GeometricMatchParams()), NO_MODEL_MESSAGE)

    def test_definition_mode_blocks_search(self):
        self.pipe.set_model(self.model_img)
        self.assertTrue(self.pipe.model_definition_mode)
        np.testing.assert_array_equal(self.pipe.get_processed(), self.model_img)
        msg = self.pipe.apply("GeometricMatch", GeometricMatchParams())
        self.assertEqual(msg, MODEL_DEFINITION_MESSAGE)
        self.assertNotIn("geometric_search", self.fake.names())

    def test_preview_shows_edges(self):
        self.pipe.set_model(self.model_img)
        self.assertTrue(self.pipe.preview_model(GeometricMatchParams(smoothness=20)))
        np.testing.assert_array_equal(self.pipe.get_processed(), 255 - self.model_img)
        self.assertIsNone(self.pipe.model)

    def test_train_then_search(self):
        self.pipe.set_model(self.model_img)
        self.assertTrue(self.pipe.train_model(GeometricMatchParams(smoothness=30)))
        self.assertFalse(self.pipe.model_definition_mode)
        self.assertEqual(self.pipe.model.smoothness, 30.0)
        np.testing.assert_array_equal(self.pipe.get_processed(), self.pipe.source)

        self.fake.search_result = [Match(x=5, y=5, score=88.0, width=6, height=6)]
        msg = self.pipe.apply("GeometricMatch", GeometricMatchParams(min_score=60))
        self.assertEqual(msg, "Found 1 match(es) (min score 60%).")
        self.assertEqual(self.fake.calls[-1], ("draw_matches", 1))

        self.fake.search_result = []
        msg = self.pipe.apply("GeometricMatch", GeometricMatchParams(min_score=75.5))
        self.assertEqual(msg, "No match found (min score 75.5%).")
        self.assertEqual(self.pipe.matches, [])

    def test_preview_and_train_need_model_image(self):
        self.assertFalse(self.pipe.preview_model(GeometricMatchParams()))
        self.assertFalse(self.pipe.train_model(GeometricMatchParams()))

    def test_load_model(self):
        self.fake.images["model.png"] = self.model_img
        self.pipe.load_model("model.png")
        self.assertTrue(self.pipe.model_definition_mode)


class TestRegions(PipelineTestCase):

    def setUp(self):
        super().setUp()
        self.img = _gradient()
        self.pipe.set_source(self.img)

    def test_crop_replaces_source(self):
        self.pipe.apply("Threshold", ThresholdParams())
        self.assertTrue(self.pipe.crop(2, 3, 5, 4))
        np.testing.assert_array_equal(self.pipe.source, self.img[3:7, 2:7])
        np.testing.assert_array_equal(self.pipe.working, self.pipe.source)
        self.assertEqual(self.pipe.blobs, [])

    def test_crop_owns_pixels(self):
        self.pipe.crop(0, 0, 4, 4)
        self.assertFalse(np.shares_memory(self.pipe.source, self.img))

    def test_crop_partially_outside_is_noop(self):
        for region in [(18, 8, 10, 10), (-10, -10, 30, 30), (0, 0, 21, 10), (0, 0, 20, 11)]:
            self.assertFalse(self.pipe.crop(*region), region)
            np.testing.assert_array_equal(self.pipe.source, self.img)
        self.assertTrue(self.pipe.crop(0, 0, 20, 10))
        self.assertEqual(self.pipe.source.shape, (10, 20))

    def test_save_partially_outside_is_noop(self):
        self.assertFalse(self.pipe.save_region("out.png", 15, 5, 10, 10))
        self.assertEqual(self.fake.exports, [])

    def test_invalid_crop_is_noop(self):
        for region in [(0, 0, 0, 5), (0, 0, 5, -1), (50, 50, 5, 5)]:
            self.assertFalse(self.pipe.crop(*region), region)
            np.testing.assert_array_equal(self.pipe.source, self.img)

    def test_save_region(self):
        self.assertTrue(self.pipe.save_region("out.png", 1, 2, 3, 4))
        img, rect, path = self.fake.exports[-1]
        self.assertEqual((rect, path), ((1, 2, 4, 6), "out.png"))
        self.assertIs(img, self.pipe.source)

    def test_invalid_save_is_noop(self):
        self.assertFalse(self.pipe.save_region("out.png", 0, 0, 0, 0))
        self.assertEqual(self.fake.exports, [])

    def test_save_failure_propagates(self):
        self.fake.fail_on.add("export_region")
        with self.assertRaises(BackendFailure):
            self.pipe.save_region("out.png", 0, 0, 2, 2)
        np.testing.assert_array_equal(self.pipe.source, self.img)

    def test_roi_helpers_truncate(self):
        self.assertTrue(self.pipe.save_roi("roi.png", RoiRect(1.7, 2.2, 3.9, 4.1)))
        self.assertEqual(self.fake.exports[-1][1], (1, 2, 5, 6))
        self.assertFalse(self.pipe.save_roi("roi.png", None))
        self.assertFalse(self.pipe.crop_roi(RoiRect(1, 1, 0, 3)))
        self.assertTrue(self.pipe.crop_roi(RoiRect(0, 0, 3, 2)))
        self.assertEqual(self.pipe.source.shape, (2, 3))


class TestOpenCvIntegration(unittest.TestCase):
    """End to end with the real backend."""

    def setUp(self):
        self.pipe = Pipeline(OpenCvBackend())

    def test_l_shape_blob(self):
        img = np.zeros((5, 5), np.uint8)
        for x, y in [(0, 0), (1, 0), (2, 0), (0, 1), (0, 2)]:
            img[y, x] = 255
        img[4, 4] = 255
        self.pipe.set_source(img)
        msg = self.pipe.apply("Blob", BlobParams(threshold_min=128, threshold_max=255, min_area=2))
        self.assertEqual(msg, "Detected 1 blob(s) (2 total).")
        b = self.pipe.blobs[0]
        self.assertEqual((b.min_x, b.min_y, b.max_x, b.max_y, b.area), (0, 0, 2, 2, 5))
        self.assertEqual(b.centroid, (0, 0))

    def test_default_blob_params(self):
        img = np.zeros((60, 100), np.uint8)
        img[10:20, 20:30] = 150
        img[40:43, 70:73] = 150
        self.pipe.set_source(img)
        msg = self.pipe.apply("Blob", BlobParams())
        self.assertEqual(msg, "Detected 1 blob(s) (2 total).")
        self.assertEqual(self.pipe.blobs[0].centroid, (24, 14))
        self.assertEqual(self.pipe.get_processed().shape, (60, 100, 3))

    def test_threshold_output_is_binary(self):
        self.pipe.set_source(_gradient(16, 16))
        self.assertEqual(self.pipe.apply("Threshold", ThresholdParams()), COMPLETE_MESSAGE)
        self.assertFalse(self.pipe.last_failed)
        self.assertTrue(set(np.unique(self.pipe.get_processed()).tolist()) <= {0, 255})

    def test_every_operation_runs(self):
        self.pipe.set_source(np.random.default_rng(3).integers(0, 256, (64, 64), dtype=np.uint8))
        for params in (ThresholdParams(), MorphologyParams(), EdgeParams(),
                       AdaptiveThresholdParams(), BlobParams()):
            msg = self.pipe.apply(type(params).kind, params)
            self.assertNotIn("failed", msg)

    def test_geometric_match_finds_model(self):
        scene = np.random.default_rng(42).integers(0, 256, (200, 200), dtype=np.uint8)
        self.pipe.set_source(scene)
        self.pipe.set_model(scene[60:100, 50:90])
        p = GeometricMatchParams(smoothness=0, min_score=90)
        self.pipe.train_model(p)
        msg = self.pipe.apply("GeometricMatch", p)
        self.assertTrue(msg.startswith("Found "), msg)
        self.assertAlmostEqual(self.pipe.matches[0].x, 70.0)
        self.assertAlmostEqual(self.pipe.matches[0].y, 80.0)

    def test_file_round_trip(self):
        img = _gradient()
        with tempfile.TemporaryDirectory() as tmp:
            src = os.path.join(tmp, "src.png")
            cv2.imwrite(src, img)
            self.pipe.load_image(src)
            out = os.path.join(tmp, "roi.png")
            self.assertTrue(self.pipe.save_region(out, 4, 2, 6, 5))
            back = cv2.imread(out, cv2.IMREAD_UNCHANGED)
        np.testing.assert_array_equal(back, img[2:7, 4:10])

    def test_missing_file(self):
        with self.assertRaises(BackendFailure):
            self.pipe.load_image("/nonexistent/indyvision/none.png")
        self.assertIsNone(self.pipe.source)


if __name__ == "__main__":
    unittest.main()
