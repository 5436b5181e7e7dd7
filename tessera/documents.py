"""Document extraction and reinsertion for bilingual and plain documents."""

from __future__ import annotations

import io
import logging
import pathlib
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple
from xml.sax.saxutils import escape, quoteattr

from lxml import etree

from .errors import FormatError, UnsupportedFileTypeError
from .structures import Segment, SegmentStatus

logger = logging.getLogger(__name__)

XLIFF_NAMESPACE = "urn:oasis:names:tc:xliff:document:1.2"
MEMOQ_NAMESPACE = "http://www.memoq.com/memoq/xliff"

INLINE_TAGS = frozenset({"g", "x", "bx", "ex", "ph"})

STATE_TO_STATUS: Dict[str, SegmentStatus] = {
    "new": SegmentStatus.PENDING,
    "needs-translation": SegmentStatus.PENDING,
    "needs-adaptation": SegmentStatus.PENDING,
    "needs-l10n": SegmentStatus.PENDING,
    "translated": SegmentStatus.TRANSLATED,
    "reviewed": SegmentStatus.REVIEW_COMPLETED,
    "signed-off": SegmentStatus.COMPLETED,
    "final": SegmentStatus.COMPLETED,
}

STATUS_TO_STATE: Dict[SegmentStatus, str] = {
    SegmentStatus.TRANSLATED: "translated",
    SegmentStatus.REVIEWING: "translated",
    SegmentStatus.REVIEW_COMPLETED: "reviewed",
    SegmentStatus.COMPLETED: "final",
}


def state_to_status(state: Optional[str], has_target_text: bool) -> SegmentStatus:
    """Map an interchange ``state`` value to a segment status.

    Unknown values fall back to ``PENDING`` so a single odd unit never
    rejects the whole file.
    """

    if not state:
        return SegmentStatus.TRANSLATED if has_target_text else SegmentStatus.PENDING
    normalized = state.strip().lower()
    if normalized.startswith("needs-review"):
        return SegmentStatus.TRANSLATED
    try:
        return STATE_TO_STATUS[normalized]
    except KeyError:
        logger.warning("Unknown XLIFF state '%s'; treating the unit as pending.", state)
        return SegmentStatus.PENDING


def status_to_state(status: SegmentStatus) -> str:
    return STATUS_TO_STATE.get(status, "needs-translation")


@dataclass
class ExtractionResult:
    segments: List[Segment]
    metadata: Dict[str, Any] = field(default_factory=dict)


class BaseDocumentHandler(ABC):
    """Common base class for document handlers."""

    format_name = "document"

    @abstractmethod
    def extract(self, data: bytes) -> ExtractionResult:
        """Parse ``data`` into segments plus file metadata."""

    @abstractmethod
    def inject(self, segments: Sequence[Segment], original: bytes) -> bytes:
        """Write segment translations into a copy of ``original``."""


@dataclass(frozen=True)
class XliffDialect:
    """Qualified names that tell XLIFF variants apart.

    ``namespaces`` lists the element namespaces accepted for the dialect.
    With ``state_on_unit`` the state is read from ``state_attribute`` on the
    trans-unit instead of the target's ``state`` attribute.
    """

    name: str
    namespaces: Tuple[str, ...]
    state_attribute: str = "state"
    state_on_unit: bool = False
    language_namespace: Optional[str] = None


STANDARD_XLIFF = XliffDialect(name="xliff", namespaces=(XLIFF_NAMESPACE,))

MEMOQ_XLIFF = XliffDialect(
    name="memoqxliff",
    namespaces=(MEMOQ_NAMESPACE, XLIFF_NAMESPACE),
    state_attribute=f"{{{MEMOQ_NAMESPACE}}}state",
    state_on_unit=True,
    language_namespace=MEMOQ_NAMESPACE,
)


def _localname(element: Any) -> Optional[str]:
    if not isinstance(element.tag, str):
        return None
    return etree.QName(element).localname


def _serialise_inline(element: Any) -> str:
    name = etree.QName(element).localname
    attributes = "".join(
        f" {etree.QName(key).localname}={quoteattr(value)}"
        for key, value in element.attrib.items()
    )
    inner = _inner_markup(element)
    if not inner:
        return f"<{name}{attributes}/>"
    return f"<{name}{attributes}>{inner}</{name}>"


def _inner_markup(element: Any, markup: bool = True) -> str:
    quote = escape if markup else str
    parts = [quote(element.text or "")]
    for child in element:
        name = _localname(child)
        if markup and name in INLINE_TAGS:
            parts.append(_serialise_inline(child))
        elif name is not None:
            parts.append(_inner_markup(child, markup))
        parts.append(quote(child.tail or ""))
    return "".join(parts)


def has_inline_tags(element: Any) -> bool:
    return any(_localname(child) in INLINE_TAGS for child in element.iter())


def element_text(element: Any, markup: Optional[bool] = None) -> str:
    """Joined text of ``element``.

    With ``markup`` the inline placeholder tags are kept as escaped markup.
    Without it the text comes back unescaped. Other child elements always
    contribute their text. ``None`` decides by looking for inline tags.
    """

    if markup is None:
        markup = has_inline_tags(element)
    return _inner_markup(element, markup=markup)


class XliffDocumentHandler(BaseDocumentHandler):
    """Round-trips segments through XLIFF 1.2 translation units."""

    def __init__(self, dialect: XliffDialect = STANDARD_XLIFF) -> None:
        self.dialect = dialect
        self.format_name = dialect.name

    def _parse(self, data: bytes) -> Any:
        parser = etree.XMLParser(resolve_entities=False, no_network=True)
        try:
            return etree.fromstring(data, parser=parser).getroottree()
        except etree.XMLSyntaxError as exc:
            raise FormatError(f"Could not parse XLIFF document: {exc}") from exc

    def _is(self, element: Any, localname: str) -> bool:
        if not isinstance(element.tag, str):
            return False
        qname = etree.QName(element)
        return qname.localname == localname and qname.namespace in self.dialect.namespaces

    def _iter(self, root: Any, localname: str) -> Iterator[Any]:
        for element in root.iter():
            if self._is(element, localname):
                yield element

    def _child(self, element: Any, localname: str) -> Any:
        for child in element:
            if self._is(child, localname):
                return child
        return None

    def _language(self, file_node: Any, name: str) -> str:
        if self.dialect.language_namespace:
            value = file_node.get(f"{{{self.dialect.language_namespace}}}{name}")
            if value:
                return value
        return file_node.get(name) or ""

    def extract(self, data: bytes) -> ExtractionResult:
        tree = self._parse(data)
        root = tree.getroot()

        metadata: Dict[str, Any] = {"format": self.dialect.name}
        file_node = next(self._iter(root, "file"), None)
        if file_node is not None:
            metadata.update(
                original=file_node.get("original") or "",
                source_language=self._language(file_node, "source-language"),
                target_language=self._language(file_node, "target-language"),
                datatype=file_node.get("datatype") or "",
            )
        else:
            logger.warning("XLIFF document has no <file> element.")

        segments: List[Segment] = []
        for unit in self._iter(root, "trans-unit"):
            unit_id = unit.get("id")
            source = self._child(unit, "source")
            target = self._child(unit, "target")
            markup = any(
                node is not None and has_inline_tags(node) for node in (source, target)
            )
            source_text = element_text(source, markup) if source is not None else ""
            if not unit_id or not source_text.strip():
                logger.warning("Skipping trans-unit with missing id or source (id=%r).", unit_id)
                continue

            target_text = element_text(target, markup) if target is not None else ""
            if self.dialect.state_on_unit:
                state = unit.get(self.dialect.state_attribute)
            else:
                state = target.get("state") if target is not None else None

            segments.append(
                Segment(
                    index=len(segments),
                    source_text=source_text,
                    translation=target_text or None,
                    status=state_to_status(state, bool(target_text.strip())),
                    metadata={"unit_id": unit_id, "state": state, "markup": markup},
                )
            )

        if not segments:
            logger.warning("No translation units found in %s document.", self.dialect.name)
        logger.info("Extracted %d segments from %s document", len(segments), self.dialect.name)
        return ExtractionResult(segments=segments, metadata=metadata)

    def inject(self, segments: Sequence[Segment], original: bytes) -> bytes:
        tree = self._parse(original)
        root = tree.getroot()
        units = {unit.get("id"): unit for unit in self._iter(root, "trans-unit")}

        written = 0
        for segment in segments:
            unit_id = segment.metadata.get("unit_id")
            unit = units.get(unit_id)
            if unit is None:
                logger.warning(
                    "Could not find trans-unit '%s' for segment %d; skipping.",
                    unit_id,
                    segment.index,
                )
                continue

            target = self._child(unit, "target")
            if target is None:
                source = self._child(unit, "source")
                if source is None:
                    logger.warning("Trans-unit '%s' has no <source>; skipping.", unit_id)
                    continue
                namespace = etree.QName(source).namespace
                target = etree.Element(f"{{{namespace}}}target" if namespace else "target")
                target.tail = source.tail
                source.addnext(target)

            _set_element_text(
                target, segment.output_text, markup=segment.metadata.get("markup", False)
            )
            state = status_to_state(segment.status)
            target.set("state", state)
            if self.dialect.state_on_unit:
                unit.set(self.dialect.state_attribute, state)
            written += 1

        logger.info("Wrote %d of %d segments into the XLIFF document", written, len(segments))
        return etree.tostring(tree, xml_declaration=True, encoding="UTF-8")


def _set_element_text(element: Any, text: str, markup: bool = False) -> None:
    """Replace the content of ``element`` with ``text``.

    With ``markup`` the text was extracted with its inline tags escaped, so
    it is parsed back into elements in the target's namespace. Anything that
    is not well-formed is written as plain text. Without ``markup`` the text
    is always written literally.
    """

    for child in list(element):
        element.remove(child)
    element.text = None

    if markup:
        namespace = etree.QName(element).namespace
        xmlns = f' xmlns="{namespace}"' if namespace else ""
        try:
            wrapper = etree.fromstring(f"<wrapper{xmlns}>{text}</wrapper>")
        except etree.XMLSyntaxError:
            wrapper = None
        if wrapper is not None:
            element.text = wrapper.text
            for child in list(wrapper):
                element.append(child)
            return
    element.text = text


def _import_docx():
    try:
        from docx import Document  # type: ignore
    except ImportError as exc:  # pragma: no cover - import guard
        raise UnsupportedFileTypeError(
            "python-docx is required to process .docx files. "
            "Install it with `pip install python-docx`."
        ) from exc
    return Document


class DocxDocumentHandler(BaseDocumentHandler):
    """Extracts and reinserts paragraph text for Word documents."""

    format_name = "docx"

    def _open(self, data: bytes) -> Any:
        Document = _import_docx()
        try:
            return Document(io.BytesIO(data))
        except Exception as exc:
            raise FormatError(f"Could not open Word document: {exc}") from exc

    def extract(self, data: bytes) -> ExtractionResult:
        document = self._open(data)
        segments: List[Segment] = []
        for location, paragraph in _iter_paragraphs(document):
            text = paragraph.text
            if not text or not text.strip():
                continue
            segments.append(
                Segment(
                    index=len(segments),
                    source_text=text,
                    metadata={"location": location},
                )
            )
        logger.info("Extracted %d paragraphs from Word document", len(segments))
        return ExtractionResult(segments=segments, metadata={"format": self.format_name})

    def inject(self, segments: Sequence[Segment], original: bytes) -> bytes:
        document = self._open(original)
        paragraphs = dict(_iter_paragraphs(document))
        for segment in segments:
            location = segment.metadata.get("location")
            paragraph = paragraphs.get(location)
            if paragraph is None:
                logger.warning("Could not find paragraph '%s'; skipping.", location)
                continue
            text = segment.output_text
            if not text:
                continue
            runs = paragraph.runs
            if not runs:
                paragraph.add_run(text)
                continue
            runs[0].text = text
            for run in runs[1:]:
                run.text = ""

        buffer = io.BytesIO()
        document.save(buffer)
        return buffer.getvalue()


def _iter_paragraphs(document: Any) -> Iterator[Tuple[str, Any]]:
    for p_idx, paragraph in enumerate(document.paragraphs):
        yield f"body.p{p_idx}", paragraph
    yield from _iter_table_paragraphs(document.tables, "body")
    for s_idx, section in enumerate(document.sections):
        for name, container in (("header", section.header), ("footer", section.footer)):
            # linked parts belong to an earlier section
            if container.is_linked_to_previous:
                continue
            prefix = f"section{s_idx}.{name}"
            for p_idx, paragraph in enumerate(container.paragraphs):
                yield f"{prefix}.p{p_idx}", paragraph
            yield from _iter_table_paragraphs(container.tables, prefix)


def _iter_table_paragraphs(tables: Any, prefix: str) -> Iterator[Tuple[str, Any]]:
    processed_cells = set()
    for t_idx, table in enumerate(tables):
        for r_idx, row in enumerate(table.rows):
            for c_idx, cell in enumerate(row.cells):
                # merged cells repeat the same underlying element
                cell_key = id(cell._tc)  # type: ignore[attr-defined]
                if cell_key in processed_cells:
                    continue
                processed_cells.add(cell_key)
                base = f"{prefix}.table{t_idx}.row{r_idx}.cell{c_idx}"
                for p_idx, paragraph in enumerate(cell.paragraphs):
                    yield f"{base}.p{p_idx}", paragraph


PARAGRAPH_BREAK = re.compile(r"\r?\n[ \t]*\r?\n")


class PlainTextDocumentHandler(BaseDocumentHandler):
    """Splits UTF-8 text on blank lines."""

    format_name = "txt"

    def extract(self, data: bytes) -> ExtractionResult:
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise FormatError(f"Text file is not valid UTF-8: {exc}") from exc
        segments = [
            Segment(index=index, source_text=block)
            for index, block in enumerate(
                block.strip() for block in PARAGRAPH_BREAK.split(text) if block.strip()
            )
        ]
        return ExtractionResult(segments=segments, metadata={"format": self.format_name})

    def inject(self, segments: Sequence[Segment], original: bytes) -> bytes:
        ordered = sorted(segments, key=lambda segment: segment.index)
        blocks = [segment.output_text or segment.source_text for segment in ordered]
        return ("\n\n".join(blocks) + "\n").encode("utf-8")


FORMAT_SUFFIXES = {
    ".xlf": "xliff",
    ".xliff": "xliff",
    ".mqxliff": "memoqxliff",
    ".docx": "docx",
    ".txt": "txt",
}


def detect_format(path: pathlib.Path, data: Optional[bytes] = None) -> str:
    """Map a file name to a format hint.

    XLIFF content that declares the memoQ namespace is reported as the
    memoQ dialect.
    """

    suffix = path.suffix.lower()
    try:
        hint = FORMAT_SUFFIXES[suffix]
    except KeyError:
        raise UnsupportedFileTypeError(
            f"Unsupported file type '{suffix or path.name}'. "
            "Use .xlf, .xliff, .mqxliff, .docx or .txt."
        ) from None
    if hint == "xliff" and data is not None and MEMOQ_NAMESPACE.encode() in data:
        return "memoqxliff"
    return hint


def detect_handler(format_hint: str) -> BaseDocumentHandler:
    """Select an appropriate handler for ``format_hint``."""

    normalized = (format_hint or "").strip().lower().replace("-", "").replace("_", "")
    if normalized in {"xliff", "xlf"}:
        return XliffDocumentHandler(STANDARD_XLIFF)
    if normalized in {"memoqxliff", "memoq", "mqxliff"}:
        return XliffDocumentHandler(MEMOQ_XLIFF)
    if normalized == "docx":
        return DocxDocumentHandler()
    if normalized in {"txt", "text"}:
        return PlainTextDocumentHandler()
    raise UnsupportedFileTypeError(f"Unsupported document format '{format_hint}'.")
