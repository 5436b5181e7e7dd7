from __future__ import annotations

import json
from typing import Callable, List, Optional

import pytest

from tessera.batching import parse_batch_response, segment_marker
from tessera.errors import TranslationProviderError
from tessera.policy import RetryPolicy
from tessera.providers import (
    CompletionProvider,
    CompletionRequest,
    CompletionResponse,
    ProviderGateway,
    ProviderRegistry,
    Usage,
)
from tessera.store import InMemorySegmentStore
from tessera.structures import FileRecord, Segment, SegmentStatus

Responder = Callable[[CompletionRequest], str]


def char_counter(text: str) -> int:
    return len(text)


def prefix_translation(prefix: str = "ES:") -> Responder:
    """Answer every segment marker in the prompt with ``prefix + source``."""

    def respond(request: CompletionRequest) -> str:
        mapping = parse_batch_response(request.user_prompt)
        return "\n\n".join(
            f"{segment_marker(index)}\n{prefix}{text}" for index, text in mapping.items()
        )

    return respond


def review_json(
    suggestion: Optional[str] = None,
    issues: Optional[list] = None,
    scores: Optional[list] = None,
) -> str:
    payload = {
        "issues": issues or [],
        "scores": scores if scores is not None else [{"type": "overall", "score": 90}],
    }
    if suggestion is not None:
        payload["suggestedTranslation"] = suggestion
    return json.dumps(payload)


class ScriptedProvider(CompletionProvider):
    """Provider whose answers come from a responder function."""

    name = "fake"
    default_model = "fake-model"

    def __init__(
        self,
        translate: Optional[Responder] = None,
        review: Optional[Responder] = None,
    ) -> None:
        self.translate = translate or prefix_translation()
        self.review = review or (lambda request: review_json())
        self.requests: List[CompletionRequest] = []

    @property
    def review_requests(self) -> List[CompletionRequest]:
        return [request for request in self.requests if request.json_mode]

    @property
    def translate_requests(self) -> List[CompletionRequest]:
        return [request for request in self.requests if not request.json_mode]

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        self.requests.append(request)
        responder = self.review if request.json_mode else self.translate
        content = responder(request)
        return CompletionResponse(
            content=content,
            usage=Usage(prompt_tokens=10, completion_tokens=4),
            model=request.model or self.default_model,
        )


def failing(message: str = "backend unavailable") -> Responder:
    def respond(request: CompletionRequest) -> str:
        raise TranslationProviderError(message)

    return respond


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def store() -> InMemorySegmentStore:
    return InMemorySegmentStore()


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def retry(sleeper: SleepRecorder) -> RetryPolicy:
    return RetryPolicy(max_attempts=3, backoff_unit=1.0, sleep=sleeper)


def make_gateway(provider: CompletionProvider) -> ProviderGateway:
    return ProviderGateway(
        ProviderRegistry.single(provider), max_calls=1000, period=1.0, timeout=5.0
    )


async def seed_file(
    store: InMemorySegmentStore,
    texts: List[str],
    *,
    status: SegmentStatus = SegmentStatus.PENDING,
    translated: bool = False,
    project_id: Optional[str] = None,
    name: str = "doc.xlf",
) -> tuple:
    record = await store.add_file(
        FileRecord(
            id="",
            name=name,
            project_id=project_id,
            metadata={"source_language": "en", "target_language": "es"},
        )
    )
    segments = await store.add_segments(
        record.id,
        [
            Segment(
                index=index,
                source_text=text,
                translation=f"ES:{text}" if translated else None,
                status=status,
            )
            for index, text in enumerate(texts)
        ],
    )
    return record, segments


XLIFF_SAMPLE = b"""<?xml version="1.0" encoding="UTF-8"?>
<xliff version="1.2" xmlns="urn:oasis:names:tc:xliff:document:1.2">
  <file original="greeting.txt" source-language="en" target-language="es" datatype="plaintext">
    <body>
      <trans-unit id="u1">
        <source>Hello</source>
        <target state="final">Hola</target>
      </trans-unit>
      <trans-unit id="u2">
        <source>Good morning</source>
      </trans-unit>
      <trans-unit id="u3">
        <source>Press <g id="1">Save</g> now</source>
        <target state="needs-review-translation">Pulse <g id="1">Guardar</g> ahora</target>
      </trans-unit>
      <trans-unit id="u4">
        <source>Odd state</source>
        <target state="mystery">Estado raro</target>
      </trans-unit>
      <trans-unit>
        <source>No id here</source>
      </trans-unit>
      <trans-unit id="u6">
        <source>Already done?</source>
        <target>Listo?</target>
      </trans-unit>
    </body>
  </file>
</xliff>
"""

MEMOQ_SAMPLE = b"""<?xml version="1.0" encoding="UTF-8"?>
<xliff version="1.2" xmlns="urn:oasis:names:tc:xliff:document:1.2"
       xmlns:m="http://www.memoq.com/memoq/xliff">
  <file original="menu.docx" source-language="en" target-language="de" datatype="x-docx">
    <body>
      <trans-unit id="1" m:state="reviewed">
        <source>Open file</source>
        <target>Datei \xc3\xb6ffnen</target>
      </trans-unit>
      <trans-unit id="2">
        <source>Close file</source>
        <target></target>
      </trans-unit>
    </body>
  </file>
</xliff>
"""


@pytest.fixture
def xliff_bytes() -> bytes:
    return XLIFF_SAMPLE


@pytest.fixture
def memoq_bytes() -> bytes:
    return MEMOQ_SAMPLE
