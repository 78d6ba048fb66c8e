import io
import unittest
from unittest.mock import patch

from PIL import Image

from tests.base import *  # noqa: F401,F403

from filevault.core.errors import TranscodeFailure
from filevault.services.image_transcoder import (
    FIT_COVER,
    FIT_INSIDE,
    PillowImageTranscoder,
    can_transcode,
    normalize_format,
    supported_formats,
    thumbnail_profiles,
    transcoder_health,
)


def _open(data: bytes) -> Image.Image:
    return Image.open(io.BytesIO(data))


class ImageTranscoderTests(unittest.TestCase):
    def setUp(self):
        self.transcoder = PillowImageTranscoder(max_bytes=8 * MB, default_quality=85)

    def test_metadata_reports_dimensions_format_and_alpha(self):
        info = self.transcoder.metadata(png_bytes(64, 48, mode="RGBA"))
        self.assertEqual((info.width, info.height), (64, 48))
        self.assertEqual(info.format, "png")
        self.assertTrue(info.has_alpha)
        self.assertEqual(info.color_space, "RGBA")

        info = self.transcoder.metadata(jpeg_bytes(40, 30))
        self.assertEqual(info.format, "jpeg")
        self.assertFalse(info.has_alpha)

    def test_optimize_keeps_supported_formats(self):
        data, fmt = self.transcoder.optimize(png_bytes(32, 32), format="image/png")
        self.assertEqual(fmt, "png")
        self.assertEqual(_open(data).format, "PNG")

        data, fmt = self.transcoder.optimize(jpeg_bytes(64, 64), quality=70)
        self.assertEqual(fmt, "jpeg")
        self.assertEqual(_open(data).format, "JPEG")

    def test_optimize_turns_other_formats_into_jpeg(self):
        out = io.BytesIO()
        Image.new("RGB", (20, 10), (200, 10, 10)).save(out, "BMP")
        data, fmt = self.transcoder.optimize(out.getvalue(), format="image/bmp")
        self.assertEqual(fmt, "jpeg")
        self.assertEqual(_open(data).size, (20, 10))

    def test_optimize_can_bound_dimensions(self):
        data, _ = self.transcoder.optimize(jpeg_bytes(400, 200), max_width=100, max_height=100)
        self.assertEqual(_open(data).size, (100, 50))

    def test_cover_thumbnail_crops_to_exact_box(self):
        data = self.transcoder.thumbnail(jpeg_bytes(400, 200), width=150, height=150, fit=FIT_COVER, quality=80)
        img = _open(data)
        self.assertEqual(img.format, "JPEG")
        self.assertEqual(img.size, (150, 150))

    def test_inside_thumbnail_keeps_aspect_ratio(self):
        data = self.transcoder.thumbnail(jpeg_bytes(400, 200), width=300, height=300, fit=FIT_INSIDE, quality=85)
        self.assertEqual(_open(data).size, (300, 150))

    def test_thumbnails_never_upscale(self):
        source = png_bytes(50, 40, mode="RGBA")
        cover = self.transcoder.thumbnail(source, width=150, height=150, fit=FIT_COVER, quality=80)
        inside = self.transcoder.thumbnail(source, width=1200, height=1200, fit=FIT_INSIDE, quality=90)
        self.assertEqual(_open(cover).size, (50, 40))
        self.assertEqual(_open(inside).size, (50, 40))
        self.assertEqual(_open(inside).mode, "RGB")

    def test_unknown_fit_is_rejected(self):
        with self.assertRaises(TranscodeFailure):
            self.transcoder.thumbnail(png_bytes(), width=10, height=10, fit="stretch", quality=80)

    def test_convert_between_formats(self):
        webp = self.transcoder.convert(png_bytes(16, 16), "webp")
        self.assertEqual(_open(webp).format, "WEBP")
        jpeg = self.transcoder.convert(png_bytes(16, 16), "image/jpg")
        self.assertEqual(_open(jpeg).format, "JPEG")
        with self.assertRaises(TranscodeFailure):
            self.transcoder.convert(png_bytes(16, 16), "heic")

    def test_invalid_input_raises_transcode_failure(self):
        for data in (b"", b"definitely not an image", b"x" * (8 * MB + 1)):
            with self.subTest(size=len(data)):
                with self.assertRaises(TranscodeFailure):
                    self.transcoder.metadata(data)

    def test_resize_errors_raise_transcode_failure(self):
        with patch("filevault.services.image_transcoder.ImageOps.fit", side_effect=ValueError("image has wrong mode")):
            with self.assertRaises(TranscodeFailure):
                self.transcoder.thumbnail(png_bytes(), width=10, height=10, fit=FIT_COVER, quality=80)
        with patch.object(Image.Image, "thumbnail", side_effect=OSError("broken data stream")):
            with self.assertRaises(TranscodeFailure):
                self.transcoder.thumbnail(png_bytes(), width=10, height=10, fit=FIT_INSIDE, quality=80)
            with self.assertRaises(TranscodeFailure):
                self.transcoder.optimize(png_bytes(), max_width=10)
        with patch("filevault.services.image_transcoder.ImageOps.exif_transpose", side_effect=OSError("bad exif")):
            with self.assertRaises(TranscodeFailure):
                self.transcoder.metadata(png_bytes())

    def test_health_reports_formats_and_test_decode(self):
        health = transcoder_health()
        self.assertEqual(health["status"], "ok")
        self.assertTrue(health["checks"]["test_decode"])
        self.assertIn("jpeg", health["supported_formats"])
        self.assertIn("png", health["supported_formats"])
        self.assertNotIn("jpg", supported_formats())
        with patch("filevault.services.image_transcoder.settings.IMAGE_PROCESSING_ENABLED", False):
            self.assertEqual(transcoder_health()["status"], "disabled")

    def test_helpers(self):
        self.assertTrue(can_transcode("IMAGE/JPEG"))
        self.assertTrue(can_transcode("image/tiff"))
        self.assertFalse(can_transcode("image/svg+xml"))
        self.assertFalse(can_transcode("application/pdf"))
        self.assertEqual(normalize_format("image/jpg"), "jpeg")
        self.assertEqual(normalize_format("PNG"), "png")
        self.assertEqual(normalize_format(None), "")

    def test_thumbnail_profiles(self):
        profiles = thumbnail_profiles()
        self.assertEqual([p.name for p in profiles], ["thumbnail", "small", "medium", "large"])
        self.assertEqual([p.width for p in profiles], [150, 300, 600, 1200])
        self.assertEqual([p.quality for p in profiles], [80, 85, 85, 90])
        self.assertEqual([p.fit for p in profiles], [FIT_COVER, FIT_INSIDE, FIT_INSIDE, FIT_INSIDE])

        custom = thumbnail_profiles([64, 128, 256, 512, 1024])
        self.assertEqual(custom[-1].name, "size_1024")
        self.assertEqual(custom[-1].quality, 90)


if __name__ == "__main__":
    unittest.main()
