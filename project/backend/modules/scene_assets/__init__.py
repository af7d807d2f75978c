"""
Scene Assets module.

Per-scene upload locking and checksum-verified storage of generated assets.
"""

from modules.scene_assets.locks import SceneUploadLocks
from modules.scene_assets.uploader import SceneAssetUploader, compute_checksum

__all__ = ["SceneUploadLocks", "SceneAssetUploader", "compute_checksum"]
