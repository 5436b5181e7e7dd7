"""Token-bounded batching and the ``[SEG<n>]`` wire protocol."""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Callable, Dict, List, Mapping, Optional, Sequence

import tiktoken

from .structures import Batch, BatchPlan, Segment, SkippedSegment

logger = logging.getLogger(__name__)

TokenCounter = Callable[[str], int]

DEFAULT_TOKENIZER_MODEL = "gpt-4"
SEGMENT_SEPARATOR = "\n\n"
SEGMENT_MARKER_PATTERN = re.compile(r"\[SEG(\d+)\][ \t]*(?:\r?\n)?")
TRAILING_SEPARATOR_PATTERN = re.compile(r"(?:\r?\n){1,2}\Z")


@lru_cache(maxsize=8)
def _load_encoding(model: str):
    return tiktoken.encoding_for_model(model)


def estimate_tokens(text: str, model: str = DEFAULT_TOKENIZER_MODEL) -> int:
    """Estimate the token count of ``text`` for ``model``.

    Falls back to ``ceil(len(text) / 4)`` when the tokenizer cannot be loaded
    (``tiktoken`` may need to download its tables) or fails to encode.
    """

    if not text:
        return 0
    try:
        encoding = _load_encoding(model)
        return len(encoding.encode(text, disallowed_special=()))
    except Exception as exc:
        logger.debug("Tokenizer unavailable for %s (%s); estimating.", model, exc)
        return math.ceil(len(text) / 4)


def segment_marker(index: int) -> str:
    return f"[SEG{index}]"


def render_segment(segment: Segment) -> str:
    return f"{segment_marker(segment.index)}\n{segment.source_text}"


def render_batch_prompt(segments: Sequence[Segment]) -> str:
    """Serialise segments as ``[SEG<index>]`` blocks separated by blank lines."""

    return SEGMENT_SEPARATOR.join(render_segment(segment) for segment in segments)


def parse_batch_response(text: str) -> Dict[int, str]:
    """Map segment index to translated text.

    Content runs from one marker to the next marker or the end of the text.
    Only the blank-line separator in front of a following marker is removed,
    so trailing spaces and line breaks inside a segment survive.
    Anything before the first marker, and any malformed marker, is ignored.
    A duplicated index keeps the last occurrence.
    """

    result: Dict[int, str] = {}
    if not text:
        logger.warning("Received an empty response to parse.")
        return result

    matches = list(SEGMENT_MARKER_PATTERN.finditer(text))
    for position, match in enumerate(matches):
        index = int(match.group(1))
        if position + 1 < len(matches):
            content = text[match.end():matches[position + 1].start()]
            content = TRAILING_SEPARATOR_PATTERN.sub("", content, count=1)
        else:
            content = text[match.end():]
        if index in result:
            logger.warning("Duplicate segment index %d in response; keeping the last.", index)
        result[index] = content

    if not result:
        logger.warning(
            "Found no segment markers in a non-empty response starting %r.", text[:100]
        )
    return result


def split_into_batches(
    segments: Sequence[Segment],
    system_prompt_tokens: int,
    max_input_tokens: int,
    counter: TokenCounter = estimate_tokens,
) -> BatchPlan:
    """Greedily pack segments in index order under ``max_input_tokens``.

    A segment that cannot fit even on its own is skipped, never truncated.
    """

    plan = BatchPlan()
    ordered = sorted(segments, key=lambda segment: segment.index)

    if system_prompt_tokens > max_input_tokens:
        logger.error(
            "System prompt alone (%d tokens) exceeds the %d token budget.",
            system_prompt_tokens,
            max_input_tokens,
        )
        for segment in ordered:
            plan.skipped.append(
                SkippedSegment(
                    segment=segment,
                    tokens=counter(render_segment(segment)),
                    reason="system prompt exceeds the token budget",
                )
            )
        return plan

    separator_tokens = counter(SEGMENT_SEPARATOR)
    batch_segments: List[Segment] = []
    running_total = system_prompt_tokens
    batch_id = 1

    def close_batch() -> None:
        nonlocal batch_segments, running_total, batch_id
        if batch_segments:
            plan.batches.append(
                Batch(batch_id=batch_id, segments=batch_segments, token_count=running_total)
            )
            batch_id += 1
        batch_segments = []
        running_total = system_prompt_tokens

    for segment in ordered:
        size = counter(render_segment(segment))
        if system_prompt_tokens + size > max_input_tokens:
            logger.error(
                "Segment %d (%d tokens) with the system prompt (%d tokens) exceeds "
                "the %d token budget. Skipping it.",
                segment.index,
                size,
                system_prompt_tokens,
                max_input_tokens,
            )
            plan.skipped.append(
                SkippedSegment(
                    segment=segment,
                    tokens=size,
                    reason=(
                        f"segment needs {size} tokens plus {system_prompt_tokens} for "
                        f"the system prompt, over the {max_input_tokens} token budget"
                    ),
                )
            )
            continue

        additional = size + (separator_tokens if batch_segments else 0)
        if batch_segments and running_total + additional > max_input_tokens:
            close_batch()
            additional = size

        batch_segments.append(segment)
        running_total += additional

    close_batch()
    logger.debug(
        "Split %d segments into %d batches (%d skipped) under %d tokens.",
        len(ordered),
        len(plan.batches),
        len(plan.skipped),
        max_input_tokens,
    )
    return plan


SYSTEM_PROMPT_TEMPLATE = (
    "You are a professional translator. Translate each text segment from "
    "{source_language} to {target_language}.\n"
    "Every segment starts with a marker line such as [SEG12]. Rules:\n"
    "- Keep every marker exactly as given, on its own line, followed by the translation.\n"
    "- Do not merge, split, reorder, add or omit segments.\n"
    "- Preserve placeholders, inline tags, numbers and formatting.\n"
    "- Reply only with the marked translations, for example:\n"
    "[SEG12]\n<translated text>\n\n[SEG13]\n<translated text>"
)


def build_system_prompt(source_language: str, target_language: str) -> str:
    return SYSTEM_PROMPT_TEMPLATE.format(
        source_language=source_language,
        target_language=target_language,
    )


@dataclass
class PromptContext:
    """Values substituted into the user prompt header."""

    source_language: str
    target_language: str
    domain: Optional[str] = None
    terminology: Mapping[str, str] = field(default_factory=dict)

    def header(self) -> str:
        terms = "; ".join(f"{source}={target}" for source, target in self.terminology.items())
        return (
            f"Translate the following segments from {self.source_language} to "
            f"{self.target_language}. Keep the segment markers.\n"
            f"Domain: {self.domain or 'general'}\n"
            f"Terminology: {terms or 'None provided'}\n\n"
        )


def build_user_prompt(segments: Sequence[Segment], context: PromptContext) -> str:
    return context.header() + render_batch_prompt(segments)


class BatchBuilder:
    """Plans token-bounded batches and renders their prompts."""

    def __init__(
        self,
        max_input_tokens: int,
        counter: TokenCounter = estimate_tokens,
    ) -> None:
        self.max_input_tokens = max(1, max_input_tokens)
        self.counter = counter

    def build(
        self,
        segments: Sequence[Segment],
        *,
        system_prompt: str,
        context: PromptContext,
    ) -> BatchPlan:
        overhead = self.counter(system_prompt) + self.counter(context.header())
        plan = split_into_batches(segments, overhead, self.max_input_tokens, self.counter)
        for batch in plan.batches:
            batch.prompt = build_user_prompt(batch.segments, context)
        return plan
