"""Image subjects: where images come from and where metadata goes."""

import json
import logging
import re
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..models import Applied, Draft, MetadataState
from ..utils.image_processor import ImagePayload, ImageProcessor

logger = logging.getLogger(__name__)


class SubjectStore(ABC):
    """Access to the host's images and their metadata fields."""

    @abstractmethod
    def list_subjects(self) -> List[str]:
        pass

    @abstractmethod
    def get_image(self, subject_id: str) -> ImagePayload:
        pass

    @abstractmethod
    def get_context(self, subject_id: str, language: str = "en") -> Dict[str, Any]:
        pass

    @abstractmethod
    def apply_metadata(self, subject_id: str, language: str, state: MetadataState):
        """Store metadata. Applied overwrites live fields, Draft never does."""
        pass

    @abstractmethod
    def get_metadata(self, subject_id: str, language: str = "en") -> Dict[str, Any]:
        """Live (applied) fields."""
        pass

    @abstractmethod
    def get_draft(self, subject_id: str, language: str = "en") -> Dict[str, Any]:
        pass


def filename_hint(path: str) -> Optional[str]:
    """Readable words from an image filename, e.g. 'red-barn_01.jpg' -> 'red barn 01'."""
    stem = Path(path.split("?")[0]).stem
    readable = re.sub(r"[^a-zA-Z0-9\s]", "", stem.replace("-", " ").replace("_", " ")).strip()
    return readable if len(readable) > 3 else None


class ManifestSubjectStore(SubjectStore):
    """Subjects listed in a YAML manifest with metadata in a JSON sidecar.

    Manifest layout::

        site_topic: Travel blog
        subjects:
          "42":
            path: images/red-barn.jpg     # or url: https://...
            context:
              post_title: Autumn in Vermont
              categories: [travel]

    Metadata is written to ``metadata.json`` in ``data_dir`` as
    ``{subject_id: {language: {"applied": {...}, "draft": {...}}}}``.
    """

    def __init__(
        self,
        manifest_path: str,
        data_dir: Path,
        image_processor: Optional[ImageProcessor] = None,
    ):
        self.manifest_path = Path(manifest_path)
        with open(self.manifest_path) as f:
            manifest = yaml.safe_load(f) or {}

        self.site_topic = manifest.get("site_topic", "")
        self.subjects: Dict[str, Dict[str, Any]] = {
            str(k): v or {} for k, v in (manifest.get("subjects") or {}).items()
        }
        self.image_processor = image_processor or ImageProcessor()

        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.metadata_path = self.data_dir / "metadata.json"
        self.lock = threading.Lock()
        self.metadata: Dict[str, Dict[str, Dict[str, Any]]] = {}
        if self.metadata_path.exists():
            with open(self.metadata_path) as f:
                self.metadata = json.load(f)

    def list_subjects(self) -> List[str]:
        return list(self.subjects)

    def _subject(self, subject_id: str) -> Dict[str, Any]:
        try:
            return self.subjects[str(subject_id)]
        except KeyError:
            raise KeyError(f"Unknown subject: {subject_id}") from None

    def _source(self, subject_id: str) -> str:
        subject = self._subject(subject_id)
        if subject.get("url"):
            return subject["url"]
        if not subject.get("path"):
            raise ValueError(f"Subject {subject_id} has neither path nor url")

        path = Path(subject["path"])
        if not path.is_absolute():
            path = self.manifest_path.parent / path
        return str(path)

    def get_image(self, subject_id: str) -> ImagePayload:
        return self.image_processor.load(self._source(subject_id))

    def get_context(self, subject_id: str, language: str = "en") -> Dict[str, Any]:
        subject = self._subject(subject_id)
        context = dict(subject.get("context") or {})
        translated = (subject.get("translations") or {}).get(language)
        if translated:
            context.update(translated)

        if self.site_topic:
            context.setdefault("site_topic", self.site_topic)

        hint = filename_hint(self._source(subject_id))
        if hint:
            context.setdefault("filename_hint", hint)

        current_alt = self.get_metadata(subject_id, language).get("alt")
        if current_alt:
            context.setdefault("current_alt", current_alt)

        return context

    def get_metadata(self, subject_id: str, language: str = "en") -> Dict[str, Any]:
        with self.lock:
            entry = self.metadata.get(str(subject_id), {}).get(language, {})
            return dict(entry.get("applied") or {})

    def get_draft(self, subject_id: str, language: str = "en") -> Dict[str, Any]:
        with self.lock:
            entry = self.metadata.get(str(subject_id), {}).get(language, {})
            return dict(entry.get("draft") or {})

    def apply_metadata(self, subject_id: str, language: str, state: MetadataState):
        fields = state.metadata.fields()
        with self.lock:
            entry = self.metadata.setdefault(str(subject_id), {}).setdefault(language, {})
            if isinstance(state, Applied):
                entry["applied"] = fields
                entry.pop("draft", None)
            elif isinstance(state, Draft):
                entry["draft"] = fields
            else:
                raise TypeError(f"Unsupported metadata state: {type(state).__name__}")
            self._save()

        logger.debug(f"Stored {type(state).__name__.lower()} metadata for {subject_id} ({language})")

    def _save(self):
        tmp = self.metadata_path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump(self.metadata, f, indent=2, ensure_ascii=False)
        tmp.replace(self.metadata_path)
