"""
TradeInbox Backend — Test Doubles
===================================

In-process stand-ins for the external collaborators, implementing the same
abstract interfaces the production classes implement.
"""

import json
import uuid
from typing import Any, Dict, List, Optional, Union

from tradeinbox.exceptions import ObjectStoreError
from tradeinbox.services.llm_base import AnalysisContext, Classifier
from tradeinbox.services.object_store import ObjectStore


class InMemoryObjectStore(ObjectStore):
    """Write-once dict store. `fail_puts` makes the next N puts fail."""

    BASE_URL = "memory://store"

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}
        self.fail_puts = 0

    async def put(self, path: str, data: bytes, content_type: str) -> str:
        if self.fail_puts > 0:
            self.fail_puts -= 1
            raise ObjectStoreError(message="Simulated storage outage", context={"path": path})
        if path in self.objects:
            raise ObjectStoreError(message="An object with this key already exists")
        self.objects[path] = data
        self.content_types[path] = content_type
        return self.url_for(path)

    async def get(self, url: str) -> bytes:
        path = self.path_for_url(url)
        if path is None or path not in self.objects:
            raise ObjectStoreError(message="Stored file is missing", context={"url": url})
        return self.objects[path]

    async def remove(self, path: str) -> None:
        self.objects.pop(path, None)

    def url_for(self, path: str) -> str:
        return f"{self.BASE_URL}/{path}"

    def path_for_url(self, url: str) -> Optional[str]:
        prefix = f"{self.BASE_URL}/"
        return url[len(prefix):] if url.startswith(prefix) else None


def classifier_answer(
    classification: str = "job",
    confidence: float = 0.9,
    summary: str = "Riparazione perdita sotto il lavello",
    extracted_data: Optional[Dict[str, Any]] = None,
) -> str:
    return json.dumps({
        "classification": classification,
        "confidence": confidence,
        "summary": summary,
        "extracted_data": extracted_data if extracted_data is not None else {"title": "Perdita lavello"},
    })


class ScriptedClassifier(Classifier):
    """
    Returns queued answers in order. An Exception in the queue is raised.
    With an empty queue, answers a default `job` classification.
    """

    def __init__(self):
        self.answers: List[Union[str, Exception]] = []
        self.contexts: List[AnalysisContext] = []
        self.healthy = True

    def queue(self, *answers: Union[str, Exception]) -> None:
        self.answers.extend(answers)

    async def classify(self, context: AnalysisContext) -> str:
        self.contexts.append(context)
        answer = self.answers.pop(0) if self.answers else classifier_answer()
        if isinstance(answer, Exception):
            raise answer
        return answer

    async def health_check(self) -> bool:
        return self.healthy


class RecordingDispatch:
    """Collects dispatched item ids instead of classifying in the background."""

    def __init__(self):
        self.item_ids: List[uuid.UUID] = []

    async def __call__(self, item_id: uuid.UUID) -> None:
        self.item_ids.append(item_id)

