import json
import logging
import threading
import time
import uuid
from typing import Protocol

import chromadb
import numpy as np

from .models import EnrollmentTemplate

logger = logging.getLogger(__name__)


class TemplateStore(Protocol):
    def save(self, subject_id: str, template: EnrollmentTemplate) -> str: ...

    def load(self, subject_id: str) -> list[EnrollmentTemplate]: ...


class InMemoryTemplateStore:
    """Process-local template store."""
    def __init__(self):
        self._templates: dict[str, list[EnrollmentTemplate]] = {}
        self._lock = threading.Lock()

    def save(self, subject_id: str, template: EnrollmentTemplate) -> str:
        template.template_id = template.template_id or str(uuid.uuid4())
        template.created_at = template.created_at or time.time()
        with self._lock:
            self._templates.setdefault(subject_id, []).append(template)
        return template.template_id

    def load(self, subject_id: str) -> list[EnrollmentTemplate]:
        with self._lock:
            templates = list(self._templates.get(subject_id, []))
        return sorted(templates, key=lambda t: t.created_at)


class ChromaTemplateStore:
    """Manages enrollment templates in a ChromaDB collection."""
    def __init__(self, db_path: str = "./template_db", collection: str = "templates", client=None):
        try:
            self.client = client if client is not None else chromadb.PersistentClient(path=db_path)
            self.collection = self.client.get_or_create_collection(name=collection)
            logger.info(f"ChromaDB connection established. Collection '{collection}' is ready.")
        except Exception as e:
            logger.critical(f"Failed to connect to ChromaDB at path '{db_path}': {e}")
            raise

    def save(self, subject_id: str, template: EnrollmentTemplate) -> str:
        template_id = template.template_id or str(uuid.uuid4())
        created_at = template.created_at or time.time()
        metadata = {
            "subject_id": subject_id,
            "quality": float(template.quality),
            "sample_count": int(template.sample_count),
            "mode": template.mode,
            "created_at": float(created_at),
        }
        if template.landmarks is not None:
            metadata["landmarks"] = json.dumps(np.asarray(template.landmarks).tolist())
        self.collection.add(
            ids=[template_id],
            embeddings=[np.asarray(template.embedding, dtype=np.float64).tolist()],
            metadatas=[metadata],
        )
        template.template_id, template.created_at = template_id, created_at
        logger.info(f"Stored template '{template_id}' for subject '{subject_id}'.")
        return template_id

    def load(self, subject_id: str) -> list[EnrollmentTemplate]:
        result = self.collection.get(where={"subject_id": subject_id}, include=["embeddings", "metadatas"])
        if not result["ids"]:
            return []
        templates = []
        for template_id, embedding, meta in zip(result["ids"], result["embeddings"], result["metadatas"]):
            landmarks = np.asarray(json.loads(meta["landmarks"])) if meta.get("landmarks") else None
            templates.append(EnrollmentTemplate(
                embedding=np.asarray(embedding, dtype=np.float64),
                quality=float(meta["quality"]),
                sample_count=int(meta["sample_count"]),
                landmarks=landmarks,
                mode=meta.get("mode", "enhanced"),
                template_id=template_id,
                created_at=float(meta["created_at"]),
            ))
        return sorted(templates, key=lambda t: t.created_at)
