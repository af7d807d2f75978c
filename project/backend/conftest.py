"""
Shared pytest fixtures: in-memory fakes for the external collaborators.
"""
import asyncio
from typing import Any, Dict, List, Optional

import pytest

from shared.events import EventBus
from shared.interfaces import (
    CharacterExtraction,
    MusicAnalysis,
    NarrationResult,
    SceneImageResult,
    SceneVideoResult,
    ThumbnailResult,
)
from shared.models.scene import Project, Scene, SceneDraft, SceneTimestamp
from modules.scene_assets.uploader import SceneAssetUploader


class InMemoryProjectStore:
    """ProjectStore backed by dicts."""

    def __init__(self):
        self.projects: Dict[str, Project] = {}
        self.scenes: Dict[str, Scene] = {}
        self.workflow_records: Dict[str, Dict[str, Any]] = {}
        self.scene_updates: List[tuple] = []
        self.update_failures = 0

    def add_project(self, **fields) -> Project:
        fields.setdefault("title", "Test Project")
        fields.setdefault("content", "Once upon a time there was a script.")
        project = Project(**fields)
        self.projects[project.id] = project
        return project

    def add_scenes(self, project_id: str, count: int, **fields) -> List[Scene]:
        created = []
        for number in range(1, count + 1):
            scene = Scene(
                id=f"{project_id}-scene-{number}",
                project_id=project_id,
                scene_number=number,
                script_excerpt=fields.get("script_excerpt", f"Scene {number} words here"),
                **{k: v for k, v in fields.items() if k != "script_excerpt"},
            )
            self.scenes[scene.id] = scene
            created.append(scene)
        return created

    async def get_project(self, project_id: str) -> Optional[Project]:
        return self.projects.get(project_id)

    async def update_project(self, project_id: str, patch: Dict[str, Any]) -> None:
        self.projects[project_id] = self.projects[project_id].model_copy(update=patch)

    async def get_scenes_by_project(self, project_id: str) -> List[Scene]:
        return sorted(
            (s for s in self.scenes.values() if s.project_id == project_id),
            key=lambda s: s.scene_number,
        )

    async def get_scene(self, scene_id: str) -> Optional[Scene]:
        return self.scenes.get(scene_id)

    async def create_scene(self, project_id: str, draft: SceneDraft) -> Scene:
        scene = Scene(
            id=f"{project_id}-scene-{draft.scene_number}",
            project_id=project_id,
            **draft.model_dump(),
        )
        self.scenes[scene.id] = scene
        return scene

    async def update_scene(self, scene_id: str, patch: Dict[str, Any]) -> None:
        if self.update_failures > 0:
            self.update_failures -= 1
            raise ConnectionError("database unavailable")
        self.scene_updates.append((scene_id, patch))
        self.scenes[scene_id] = self.scenes[scene_id].model_copy(update=patch)

    async def create_workflow_record(self, record: Dict[str, Any]) -> None:
        self.workflow_records[record["id"]] = dict(record)

    async def update_workflow_record(self, workflow_id: str, record: Dict[str, Any]) -> None:
        self.workflow_records[workflow_id] = dict(record)

    async def load_workflow_record(self, workflow_id: str) -> Optional[Dict[str, Any]]:
        record = self.workflow_records.get(workflow_id)
        return dict(record) if record is not None else None

    async def list_workflow_records(self) -> List[Dict[str, Any]]:
        return [dict(record) for record in self.workflow_records.values()]


class FakeObjectStorage:
    """ObjectStorage backed by a dict."""

    def __init__(self):
        self.blobs: Dict[str, bytes] = {}
        self.uploads: List[str] = []
        self.corrupt_downloads = False

    async def upload_buffer(self, data: bytes, key: str, content_type: Optional[str] = None) -> str:
        await asyncio.sleep(0)
        self.blobs[key] = bytes(data)
        self.uploads.append(key)
        return f"https://storage.test/{key}"

    async def download_to_buffer(self, key: str) -> bytes:
        await asyncio.sleep(0)
        if key not in self.blobs:
            raise FileNotFoundError(key)
        data = self.blobs[key]
        return data[:-1] if self.corrupt_downloads else data


class FakeProvider:
    """GenerationProvider returning deterministic assets."""

    def __init__(self, storage: FakeObjectStorage):
        self.storage = storage
        self.narration_duration = 60.0
        self.narration_bytes = b"A" * 5000
        self.item_delay = 0.0
        self.failing_scenes: set = set()
        self.raise_for_scenes: set = set()
        self.timestamps: List[SceneTimestamp] = []
        self.timestamp_error: Optional[Exception] = None
        self.drafts: List[SceneDraft] = [
            SceneDraft(scene_number=n, title=f"Scene {n}", script_excerpt=" ".join(["word"] * (n * 5)))
            for n in range(1, 5)
        ]
        self.characters = CharacterExtraction()
        self.character_error: Optional[Exception] = None
        self.thumbnail_errors: List[Exception] = []
        self.video_prompt_error: Optional[Exception] = None
        self.music = MusicAnalysis(duration_seconds=32.0)
        self.calls: List[tuple] = []
        self.active = 0
        self.max_active = 0

    async def synthesize_narration(self, text: str, voice_params: Dict[str, Any]) -> NarrationResult:
        self.calls.append(("synthesize_narration", voice_params))
        key = "projects/narration/audio.mp3"
        url = await self.storage.upload_buffer(self.narration_bytes, key)
        return NarrationResult(
            audio_url=url,
            storage_key=key,
            duration_seconds=self.narration_duration,
            byte_size=len(self.narration_bytes),
        )

    async def generate_scene_images(self, scenes, style_params, reference_images=None) -> List[SceneImageResult]:
        self.calls.append(("generate_scene_images", [s.scene_number for s in scenes], reference_images))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.item_delay:
                await asyncio.sleep(self.item_delay)
            results = []
            for scene in scenes:
                if scene.scene_number in self.raise_for_scenes:
                    raise RuntimeError(f"provider exploded on scene {scene.scene_number}")
                if scene.scene_number in self.failing_scenes:
                    results.append(SceneImageResult(scene_id=scene.id, error="content policy violation"))
                else:
                    results.append(SceneImageResult(scene_id=scene.id, image_bytes=f"image-{scene.id}".encode()))
            return results
        finally:
            self.active -= 1

    async def generate_scene_video(self, scene, image_url) -> SceneVideoResult:
        self.calls.append(("generate_scene_video", scene.scene_number, image_url))
        if self.item_delay:
            await asyncio.sleep(self.item_delay)
        if scene.scene_number in self.failing_scenes:
            return SceneVideoResult(scene_id=scene.id, error="video model timeout")
        return SceneVideoResult(scene_id=scene.id, video_bytes=f"video-{scene.id}".encode())

    async def breakdown_scenes(self, content, style_params) -> List[SceneDraft]:
        self.calls.append(("breakdown_scenes",))
        return [draft.model_copy() for draft in self.drafts]

    async def estimate_scene_timestamps(self, audio_url, scenes, total_duration) -> List[SceneTimestamp]:
        self.calls.append(("estimate_scene_timestamps", total_duration))
        if self.timestamp_error:
            raise self.timestamp_error
        return list(self.timestamps)

    async def extract_characters(self, project, scenes) -> CharacterExtraction:
        self.calls.append(("extract_characters",))
        if self.character_error:
            raise self.character_error
        return self.characters

    async def generate_thumbnail(self, title, content, style_params) -> ThumbnailResult:
        self.calls.append(("generate_thumbnail", title))
        if self.thumbnail_errors:
            raise self.thumbnail_errors.pop(0)
        return ThumbnailResult(image_bytes=b"thumbnail-bytes")

    async def generate_video_prompts(self, scenes, style_params) -> Dict[str, str]:
        self.calls.append(("generate_video_prompts",))
        if self.video_prompt_error:
            raise self.video_prompt_error
        return {scene.id: f"Slow pan across scene {scene.scene_number}" for scene in scenes}

    async def parse_dialogue(self, content, animation_settings) -> List[SceneDraft]:
        self.calls.append(("parse_dialogue",))
        return [draft.model_copy() for draft in self.drafts[:2]]

    async def analyze_music_audio(self, audio_url, content) -> MusicAnalysis:
        self.calls.append(("analyze_music_audio",))
        return self.music

    def called(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)


@pytest.fixture
def project_store():
    """In-memory project store."""
    return InMemoryProjectStore()


@pytest.fixture
def object_storage():
    """In-memory object storage."""
    return FakeObjectStorage()


@pytest.fixture
def provider(object_storage):
    """Deterministic generation provider."""
    return FakeProvider(object_storage)


@pytest.fixture
def event_bus():
    """Event bus with a recorded event log."""
    bus = EventBus()
    bus.recorded = []
    bus.subscribe(bus.recorded.append)
    return bus


@pytest.fixture
def uploader(object_storage, project_store):
    """Checksum-verifying uploader over the fakes."""
    return SceneAssetUploader(object_storage, project_store)


@pytest.fixture(autouse=True)
def fast_persistence_retry(monkeypatch):
    """Keep persistence backoff out of test wall time."""
    from shared.config import settings
    monkeypatch.setattr(settings, "persistence_base_delay_seconds", 0.0)
