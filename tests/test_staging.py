import io
import unittest
from PIL import Image
from errors import StagingError
from staging import MB, AssetStaging, LocalFile, PreviewRegistry, detect_image_type

def make_image(name="photo.png", fmt="PNG", size=(40, 30), content_type="image/png"):
    buffer = io.BytesIO()
    Image.new("RGB", size, color=(200, 30, 30)).save(buffer, format=fmt)
    return LocalFile(name, content_type, buffer.getvalue())

class TestAssetStaging(unittest.TestCase):

    def setUp(self):
        self.registry = PreviewRegistry()
        self.staging = AssetStaging(self.registry, max_count=5, max_bytes=5 * MB)

    def test_injected_empty_registry_is_kept(self):
        self.assertIs(self.staging.registry, self.registry)

    def test_add_files_creates_preview_refs(self):
        staged = self.staging.add_files([make_image(), make_image("b.png")])
        self.assertEqual(len(self.staging), 2)
        self.assertEqual(len({a.preview_ref for a in staged}), 2)
        for asset in staged:
            self.assertTrue(asset.preview_ref.startswith("preview://"))
            self.assertIs(self.registry.resolve(asset.preview_ref), asset.file)

    def test_sixth_image_is_rejected(self):
        self.staging.add_files([make_image(f"{i}.png") for i in range(5)])
        with self.assertRaises(StagingError) as ctx:
            self.staging.add_files([make_image("extra.png")])
        self.assertEqual(str(ctx.exception), "Maximum 5 images allowed")
        self.assertEqual(len(self.staging), 5)

    def test_batch_over_limit_is_rejected_in_full(self):
        self.staging.add_files([make_image(f"{i}.png") for i in range(3)])
        with self.assertRaises(StagingError):
            self.staging.add_files([make_image("x.png"), make_image("y.png"), make_image("z.png")])
        # Жоден файл з пакету не додано
        self.assertEqual(len(self.staging), 3)
        self.assertEqual(len(self.registry), 3)

    def test_bad_file_rejects_whole_batch(self):
        bad = LocalFile("notes.txt", "text/plain", b"hello")
        with self.assertRaises(StagingError) as ctx:
            self.staging.add_files([make_image(), bad])
        self.assertEqual(str(ctx.exception), "Please upload an image file")
        self.assertEqual(len(self.staging), 0)
        self.assertEqual(len(self.registry), 0)

    def test_fake_image_content_is_rejected(self):
        fake = LocalFile("fake.jpg", "image/jpeg", b"definitely not a jpeg")
        with self.assertRaises(StagingError):
            self.staging.add_files([fake])

    def test_size_limit(self):
        staging = AssetStaging(max_count=5, max_bytes=100)
        with self.assertRaises(StagingError) as ctx:
            staging.add_files([make_image(size=(400, 400), fmt="BMP", content_type="image/bmp")])
        self.assertIn("Image size must be less than", str(ctx.exception))

    def test_missing_content_type_is_detected(self):
        staged = self.staging.add_files([make_image("scan", fmt="JPEG", content_type="")])
        self.assertEqual(staged[0].file.content_type, "image/jpeg")
        self.assertEqual(staged[0].file.extension, "jpeg")

    def test_remove_at_revokes_only_that_reference(self):
        staged = self.staging.add_files([make_image(f"{i}.png") for i in range(3)])
        removed = self.staging.remove_at(1)

        self.assertEqual(removed.preview_ref, staged[1].preview_ref)
        self.assertNotIn(staged[1].preview_ref, self.registry)
        self.assertEqual(self.staging.refs, [staged[0].preview_ref, staged[2].preview_ref])
        self.assertIn(staged[0].preview_ref, self.registry)
        self.assertIn(staged[2].preview_ref, self.registry)

    def test_remove_out_of_range(self):
        with self.assertRaises(StagingError):
            self.staging.remove_at(0)

    def test_count_invariant_over_mixed_operations(self):
        for _ in range(4):
            self.staging.add_files([make_image()])
        self.staging.remove_at(0)
        self.staging.add_files([make_image(), make_image()])
        with self.assertRaises(StagingError):
            self.staging.add_files([make_image()])
        self.staging.remove_at(4)
        self.staging.add_files([make_image()])
        self.assertEqual(len(self.staging), 5)
        self.assertLessEqual(len(self.staging), self.staging.max_count)

    def test_clear_revokes_everything(self):
        self.staging.add_files([make_image(), make_image()])
        self.staging.clear()
        self.assertEqual(len(self.staging), 0)
        self.assertEqual(len(self.registry), 0)

    def test_single_image_message(self):
        staging = AssetStaging(max_count=1)
        staging.add_files([make_image()])
        with self.assertRaises(StagingError) as ctx:
            staging.add_files([make_image()])
        self.assertEqual(str(ctx.exception), "Maximum 1 image allowed")

class TestPreviewRegistry(unittest.TestCase):

    def test_revoked_reference_cannot_be_resolved(self):
        registry = PreviewRegistry()
        ref = registry.create(make_image())
        self.assertTrue(registry.revoke(ref))
        self.assertFalse(registry.revoke(ref))
        with self.assertRaises(StagingError):
            registry.resolve(ref)

    def test_thumbnail_is_a_smaller_jpeg(self):
        registry = PreviewRegistry(thumbnail_size=(50, 50))
        ref = registry.create(make_image(size=(400, 200)))
        thumb = registry.thumbnail(ref)
        with Image.open(io.BytesIO(thumb)) as img:
            self.assertEqual(img.format, "JPEG")
            self.assertLessEqual(max(img.size), 50)

    def test_detect_image_type(self):
        self.assertEqual(detect_image_type(make_image().data), "image/png")
        self.assertIsNone(detect_image_type(b"plain text"))

if __name__ == '__main__':
    unittest.main()
