"""
Checksum-verified asset uploads.

Uploads generated scene assets under deterministic storage keys, re-downloads
them to verify checksum and length, and records the verified asset on the
scene. Writes for the same scene are serialized by a per-scene lock.
"""

import hashlib
from typing import Literal, Optional

from shared.errors import PersistenceError, RetryableError, ValidationError
from shared.interfaces import ObjectStorage, ProjectStore
from shared.logging import get_logger
from shared.models.scene import Scene, StorageResult
from shared.retry import call_with_retry, retry_with_backoff
from modules.scene_assets.locks import SceneUploadLocks

logger = get_logger("scene_assets")

AssetKind = Literal["image", "video"]

AUDIO_CONTENT_TYPES = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
}

# Storage failures worth another transfer attempt
TRANSIENT_STORAGE_ERRORS = (RetryableError, ConnectionError, TimeoutError)


def compute_checksum(data: bytes) -> str:
    """SHA-256 hex digest."""
    return hashlib.sha256(data).hexdigest()


def scene_image_key(project_id: str, scene_number: int) -> str:
    return f"projects/{project_id}/scenes/{scene_number}/image.png"


def scene_video_key(project_id: str, scene_number: int) -> str:
    return f"projects/{project_id}/scenes/{scene_number}/video.mp4"


def thumbnail_key(project_id: str) -> str:
    return f"projects/{project_id}/thumbnail.png"


def audio_key(project_id: str, extension: str) -> str:
    return f"projects/{project_id}/audio.{extension}"


def existing_verified_asset(scene: Optional[Scene], kind: AssetKind) -> Optional[StorageResult]:
    """Return the scene's verified asset of the given kind, if it has one."""
    if scene is None or not getattr(scene, f"{kind}_verified"):
        return None
    url = getattr(scene, f"{kind}_url")
    storage_key = getattr(scene, f"{kind}_storage_key")
    checksum = getattr(scene, f"{kind}_checksum")
    if not (url and storage_key and checksum):
        return None
    return StorageResult(
        url=url,
        storage_key=storage_key,
        checksum=checksum,
        byte_length=getattr(scene, f"{kind}_byte_length") or 0,
        verified=True,
    )


class SceneAssetUploader:
    """Uploads and verifies generated assets."""

    def __init__(
        self,
        storage: ObjectStorage,
        store: ProjectStore,
        locks: Optional[SceneUploadLocks] = None,
    ):
        self.storage = storage
        self.store = store
        self.locks = locks or SceneUploadLocks()

    @retry_with_backoff(max_attempts=3, base_delay=2, retryable_exceptions=TRANSIENT_STORAGE_ERRORS)
    async def _put(self, data: bytes, key: str, content_type: Optional[str]) -> str:
        return await self.storage.upload_buffer(data, key, content_type)

    @retry_with_backoff(max_attempts=3, base_delay=2, retryable_exceptions=TRANSIENT_STORAGE_ERRORS)
    async def _fetch(self, key: str) -> bytes:
        return await self.storage.download_to_buffer(key)

    async def _upload_verified(self, data: bytes, key: str, content_type: Optional[str] = None) -> StorageResult:
        if not data:
            raise ValidationError(f"Refusing to upload empty asset to {key}")

        checksum = compute_checksum(data)
        byte_length = len(data)
        logger.info(
            f"Uploading {key} ({byte_length} bytes, checksum: {checksum[:8]}...)",
            extra={"storage_key": key, "byte_length": byte_length}
        )

        url = await self._put(data, key, content_type)
        downloaded = await self._fetch(key)
        if compute_checksum(downloaded) != checksum or len(downloaded) != byte_length:
            raise PersistenceError(
                f"Upload verification failed for {key}: checksum mismatch",
                details={"storage_key": key, "expected_checksum": checksum}
            )

        return StorageResult(url=url, storage_key=key, checksum=checksum, byte_length=byte_length)

    async def _upload_scene_asset(
        self,
        kind: AssetKind,
        scene_id: str,
        key: str,
        data: bytes,
        force_regenerate: bool,
        content_type: str,
    ) -> StorageResult:
        async with self.locks.hold(scene_id):
            if not force_regenerate:
                scene = await call_with_retry(
                    lambda: self.store.get_scene(scene_id),
                    description=f"load scene {scene_id}",
                )
                existing = existing_verified_asset(scene, kind)
                if existing is not None:
                    logger.info(
                        f"Scene {scene_id} already has verified {kind}, skipping upload",
                        extra={"scene_id": scene_id, "storage_key": existing.storage_key}
                    )
                    return existing

            result = await self._upload_verified(data, key, content_type)
            await call_with_retry(
                lambda: self.store.update_scene(scene_id, {
                    f"{kind}_url": result.url,
                    f"{kind}_storage_key": result.storage_key,
                    f"{kind}_checksum": result.checksum,
                    f"{kind}_byte_length": result.byte_length,
                    f"{kind}_verified": True,
                }),
                description=f"record {kind} for scene {scene_id}",
            )
            logger.info(
                f"{kind.capitalize()} verified and saved for scene {scene_id}",
                extra={"scene_id": scene_id, "url": result.url}
            )
            return result

    async def upload_scene_image(
        self,
        scene_id: str,
        project_id: str,
        scene_number: int,
        data: bytes,
        force_regenerate: bool = False,
    ) -> StorageResult:
        """
        Upload a scene image and record it on the scene.

        Args:
            scene_id: Scene to attach the image to
            project_id: Owning project (part of the storage key)
            scene_number: Scene number (part of the storage key)
            data: Image bytes
            force_regenerate: Upload even if the scene already has a verified image

        Returns:
            StorageResult of the new upload, or of the existing verified image

        Raises:
            PersistenceError: If the uploaded bytes do not read back identically
        """
        return await self._upload_scene_asset(
            "image", scene_id, scene_image_key(project_id, scene_number), data, force_regenerate, "image/png"
        )

    async def upload_scene_video(
        self,
        scene_id: str,
        project_id: str,
        scene_number: int,
        data: bytes,
        force_regenerate: bool = False,
    ) -> StorageResult:
        return await self._upload_scene_asset(
            "video", scene_id, scene_video_key(project_id, scene_number), data, force_regenerate, "video/mp4"
        )

    async def upload_thumbnail(self, project_id: str, data: bytes) -> StorageResult:
        return await self._upload_verified(data, thumbnail_key(project_id), "image/png")

    async def upload_audio(self, project_id: str, data: bytes, filename: str = "narration.mp3") -> StorageResult:
        extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else "mp3"
        content_type = AUDIO_CONTENT_TYPES.get(extension, "audio/mp4")
        return await self._upload_verified(data, audio_key(project_id, extension), content_type)

    async def verify_scene_image(self, scene_id: str) -> bool:
        """
        Re-download a scene's image and compare checksum and length.

        Marks the image verified when it matches. Any download failure counts
        as not verified.
        """
        scene = await self.store.get_scene(scene_id)
        if scene is None or not scene.image_storage_key or not scene.image_checksum:
            return False

        try:
            data = await self._fetch(scene.image_storage_key)
        except Exception as e:
            logger.warning(
                f"Image verification failed for scene {scene_id}",
                exc_info=e,
                extra={"scene_id": scene_id}
            )
            return False

        if compute_checksum(data) != scene.image_checksum or len(data) != scene.image_byte_length:
            logger.warning(
                f"Image verification failed for scene {scene_id}: checksum mismatch",
                extra={"scene_id": scene_id}
            )
            return False

        if not scene.image_verified:
            await call_with_retry(
                lambda: self.store.update_scene(scene_id, {"image_verified": True}),
                description=f"mark image verified for scene {scene_id}",
            )
        return True
