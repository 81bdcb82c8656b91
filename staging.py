import io
import logging
import uuid
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from PIL import Image, UnidentifiedImageError

from errors import StagingError

logger = logging.getLogger(__name__)

MB = 1024 * 1024
PREVIEW_PREFIX = "preview://"


@dataclass(frozen=True)
class LocalFile:
    """Файл, який користувач обрав, але ще не завантажив у сховище."""
    name: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        # image/jpeg -> jpeg; якщо тип невідомий, беремо розширення з імені
        if "/" in self.content_type:
            return self.content_type.split("/", 1)[1].split(";")[0].strip() or "bin"
        if "." in self.name:
            return self.name.rsplit(".", 1)[1].lower()
        return "bin"


@dataclass(frozen=True)
class StagedAsset:
    file: LocalFile
    preview_ref: str


def detect_image_type(data: bytes) -> Optional[str]:
    """Повертає MIME-тип зображення (через Pillow) або None, якщо це не зображення."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
        return None
    return Image.MIME.get(fmt) if fmt else None


class PreviewRegistry:
    """
    Локальні посилання на обрані файли (аналог object URL у браузері).
    Посилання живе, доки його явно не відкликали.
    """

    def __init__(self, thumbnail_size=(320, 320)):
        self.thumbnail_size = thumbnail_size
        self._files: Dict[str, LocalFile] = {}
        self._thumbnails: Dict[str, bytes] = {}

    def create(self, file: LocalFile) -> str:
        ref = f"{PREVIEW_PREFIX}{uuid.uuid4().hex}"
        self._files[ref] = file
        return ref

    def resolve(self, ref: str) -> LocalFile:
        try:
            return self._files[ref]
        except KeyError:
            raise StagingError(f"Preview {ref} is no longer available") from None

    def thumbnail(self, ref: str) -> bytes:
        """Зменшена копія для показу користувачу. Рахується один раз на посилання."""
        if ref in self._thumbnails:
            return self._thumbnails[ref]
        file = self.resolve(ref)
        with Image.open(io.BytesIO(file.data)) as img:
            img = img.convert("RGB")
            img.thumbnail(self.thumbnail_size)
            out = io.BytesIO()
            img.save(out, format="JPEG", quality=85)
        self._thumbnails[ref] = out.getvalue()
        return self._thumbnails[ref]

    def revoke(self, ref: str) -> bool:
        self._thumbnails.pop(ref, None)
        return self._files.pop(ref, None) is not None

    def __contains__(self, ref: str) -> bool:
        return ref in self._files

    def __len__(self) -> int:
        return len(self._files)


class AssetStaging:
    """
    Черга зображень до відправки. Пакет файлів приймається повністю або не приймається зовсім.
    """

    def __init__(self, registry: Optional[PreviewRegistry] = None, max_count: int = 5, max_bytes: int = 5 * MB):
        self.registry = registry if registry is not None else PreviewRegistry()
        self.max_count = max_count
        self.max_bytes = max_bytes
        self._assets: List[StagedAsset] = []

    @property
    def assets(self) -> List[StagedAsset]:
        return list(self._assets)

    @property
    def refs(self) -> List[str]:
        return [a.preview_ref for a in self._assets]

    def __len__(self) -> int:
        return len(self._assets)

    @property
    def is_full(self) -> bool:
        return len(self._assets) >= self.max_count

    def _check(self, file: LocalFile) -> LocalFile:
        if file.content_type and not file.content_type.startswith("image/"):
            raise StagingError("Please upload an image file")
        if file.size > self.max_bytes:
            raise StagingError(f"Image size must be less than {self.max_bytes // MB}MB")
        detected = detect_image_type(file.data)
        if detected is None:
            raise StagingError("Please upload an image file")
        if not file.content_type:
            return LocalFile(file.name, detected, file.data)
        return file

    def add_files(self, files: Iterable[LocalFile]) -> List[StagedAsset]:
        batch = list(files)
        if len(self._assets) + len(batch) > self.max_count:
            noun = "image" if self.max_count == 1 else "images"
            raise StagingError(f"Maximum {self.max_count} {noun} allowed")

        checked = [self._check(f) for f in batch]
        staged = [StagedAsset(f, self.registry.create(f)) for f in checked]
        self._assets.extend(staged)
        logger.info(f"Staged {len(staged)} file(s), total {len(self._assets)}/{self.max_count}")
        return staged

    def remove_at(self, index: int) -> StagedAsset:
        if not 0 <= index < len(self._assets):
            raise StagingError(f"No image at position {index + 1}")
        asset = self._assets.pop(index)
        self.registry.revoke(asset.preview_ref)
        return asset

    def resolve(self, index: int) -> LocalFile:
        return self.registry.resolve(self._assets[index].preview_ref)

    def clear(self) -> None:
        for asset in self._assets:
            self.registry.revoke(asset.preview_ref)
        self._assets.clear()
