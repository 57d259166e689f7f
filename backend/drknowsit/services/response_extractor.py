"""Response Extractor / Sanitizer.

The chat model is instructed to append its diagnosis candidates as an inline
JSON object. This module separates that payload from the prose the user
sees. It is a best-effort heuristic parser: malformed fragments are skipped,
never raised, and the visible text is never reduced to nothing.

Order of passes:
    1. balanced `{...}` objects (diagnosis bundles and single candidates)
    2. balanced `[...]` arrays of candidate objects
    3. truncated JSON fragments still carrying diagnosis keys
    4. lines that still look like diagnosis JSON (quoted keys only)
    5. punctuation left behind by the removals, only when 1-4 removed something
    6. bare "Possible diagnoses:" style headings (sanitize_visible_text)
"""

import json
import logging
import re
from typing import Any

from drknowsit.schemas.diagnosis import DiagnosisCandidate, ExtractionResult

logger = logging.getLogger(__name__)

# Keys marking an (unparseable) span as diagnosis payload
_PAYLOAD_KEY_RE = re.compile(r'"(?:diagnos[a-z]*|suggested_forms)"\s*:', re.IGNORECASE)

# Pass 3: fragments of objects cut off mid-stream
_INCOMPLETE_JSON_PATTERNS = (
    re.compile(r'\{\s*"diagnoses?":\s*\[([^\]]*)?$', re.MULTILINE),
    re.compile(r'\{\s*"diagnoses?":\s*\[.*?\]?\s*[,}]?\s*$', re.MULTILINE),
    re.compile(r'"diagnoses?":\s*\[([^\]]*)?$', re.MULTILINE),
    re.compile(r'\{\s*"[^"]*diagnos[^"]*":', re.MULTILINE),
    re.compile(r'\[\s*\{\s*"[^"]*diagnos[^"]*":', re.MULTILINE),
)

# Pass 4: lines still carrying diagnosis JSON
_DIAGNOSIS_LINE_PATTERNS = (
    re.compile(r'"diagnos(?:e|es|is)"\s*:'),
    re.compile(r'\{\s*"diagnos'),
    re.compile(r'"diagnos[^"]*"\s*:\s*\['),
)

# Pass 5: (pattern, replacement) applied in order
_CLEANUP_RULES = (
    (re.compile(r"\s{2,}"), " "),
    (re.compile(r"\s+,"), ","),
    (re.compile(r",\s+\."), "."),
    (re.compile(r"\[\s*\]"), ""),
    (re.compile(r"\s*\]\s*,?"), " "),
    (re.compile(r"\s*\}\s*,?"), " "),
    (re.compile(r"\{\s*$"), ""),
    (re.compile(r"^\s*[\}\]]"), ""),
)

# Pass 6
_HEADING_RE = re.compile(r"^\s*(possible|potential|probable)\s+diagnoses?:", re.IGNORECASE)

# Display cleanup applied to the raw model output
_BOLD_RE = re.compile(r"\*\*(.*?)\*\*")
_ITALIC_RE = re.compile(r"\*(.*?)\*")
_IMAGE_SUGGESTION_RE = re.compile(r"\[IMAGE_SUGGESTION:.*?\]")


def _try_parse(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return None


def _find_balanced_end(text: str, start: int, open_ch: str, close_ch: str) -> int | None:
    """Return the index just past the bracket closing the one at `start`.

    String-aware: brackets inside JSON string literals are ignored.
    Returns None when the span is never closed (truncated output).
    """
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == open_ch:
            depth += 1
        elif ch == close_ch:
            depth -= 1
            if depth == 0:
                return i + 1
    return None


def _take_object(span: str, collected: list[Any]) -> bool:
    """Decide whether an object span is diagnosis payload; collect its entries."""
    parsed = _try_parse(span)
    if isinstance(parsed, dict):
        if "diagnoses" in parsed or "suggested_forms" in parsed:
            diagnoses = parsed.get("diagnoses")
            if isinstance(diagnoses, list):
                collected.extend(diagnoses)
            return True
        if "diagnosis" in parsed and "confidence" in parsed:
            collected.append(parsed)
            return True
        return False
    if parsed is None and _PAYLOAD_KEY_RE.search(span):
        logger.debug("Dropping unparseable diagnosis fragment: %.80s", span)
        return True
    return False


def _take_array(span: str, collected: list[Any]) -> bool:
    parsed = _try_parse(span)
    if (
        isinstance(parsed, list)
        and parsed
        and isinstance(parsed[0], dict)
        and "diagnosis" in parsed[0]
    ):
        collected.extend(parsed)
        return True
    return False


def _strip_spans(text: str, open_ch: str, close_ch: str, take, collected: list[Any]) -> str:
    """Remove every balanced span for which `take` returns True."""
    kept: list[str] = []
    copied_to = 0
    i = text.find(open_ch)
    while i != -1:
        end = _find_balanced_end(text, i, open_ch, close_ch)
        if end is not None and take(text[i:end], collected):
            kept.append(text[copied_to:i])
            copied_to = end
            i = text.find(open_ch, end)
        else:
            i = text.find(open_ch, i + 1)
    kept.append(text[copied_to:])
    return "".join(kept)


def _coerce_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    if confidence != confidence:  # NaN
        return 0.0
    return min(1.0, max(0.0, confidence))


def normalize_candidate(entry: Any) -> DiagnosisCandidate | None:
    """Convert a raw extracted entry to a DiagnosisCandidate, or None if unusable."""
    if isinstance(entry, str):
        name = entry.strip()
        return DiagnosisCandidate(name=name) if name else None
    if not isinstance(entry, dict):
        return None

    name = entry.get("diagnosis") or entry.get("name") or entry.get("health_topic")
    if not isinstance(name, str) or not name.strip():
        return None
    confidence = entry.get("confidence", entry.get("confidence_score"))
    reasoning = entry.get("reasoning") or entry.get("explanation") or ""
    return DiagnosisCandidate(
        name=name.strip(),
        confidence=_coerce_confidence(confidence),
        reasoning=str(reasoning),
    )


def extract_diagnoses(text: str) -> ExtractionResult:
    """Split model output into visible prose and diagnosis candidates.

    Args:
        text: Raw assistant text

    Returns:
        ExtractionResult. If cleanup leaves nothing, `clean_response` is the
        original text.
    """
    collected: list[Any] = []

    clean = _strip_spans(text, "{", "}", _take_object, collected)
    clean = _strip_spans(clean, "[", "]", _take_array, collected)

    for pattern in _INCOMPLETE_JSON_PATTERNS:
        if pattern.search(clean):
            logger.debug("Removing incomplete JSON matching %s", pattern.pattern)
            clean = pattern.sub("", clean).strip()

    clean = "\n".join(
        line for line in clean.split("\n")
        if not any(p.search(line.strip()) for p in _DIAGNOSIS_LINE_PATTERNS)
    )

    # Prose with no payload keeps its own brackets and braces
    if clean != text:
        for pattern, replacement in _CLEANUP_RULES:
            clean = pattern.sub(replacement, clean)
    clean = clean.strip()

    candidates = [c for c in (normalize_candidate(e) for e in collected) if c is not None]
    if len(candidates) != len(collected):
        logger.warning("Skipped %d unusable diagnosis entries", len(collected) - len(candidates))

    if not clean:
        logger.info("Extraction emptied the response; returning original text")
        clean = text
    return ExtractionResult(clean_response=clean, extracted_diagnoses=candidates)


def sanitize_visible_text(text: str) -> str:
    """Drop bare diagnosis section headings. Never returns an empty string for non-empty input."""
    lines = [line for line in re.split(r"\n+", text) if not _HEADING_RE.match(line.strip())]
    result = "\n".join(lines).strip()
    if not result:
        return text
    return result


def strip_display_markup(text: str) -> str:
    """Remove markdown emphasis and image-suggestion markers."""
    text = _BOLD_RE.sub(r"\1", text)
    text = _ITALIC_RE.sub(r"\1", text)
    text = _IMAGE_SUGGESTION_RE.sub("", text)
    return text.strip()


def process_response(raw: str) -> ExtractionResult:
    """Full chain applied to a model reply before it reaches the user."""
    extraction = extract_diagnoses(strip_display_markup(raw) or raw)
    visible = sanitize_visible_text(extraction.clean_response)
    logger.info(
        "Processed response: %d chars visible, %d candidates extracted",
        len(visible), len(extraction.extracted_diagnoses),
    )
    return ExtractionResult(
        clean_response=visible,
        extracted_diagnoses=extraction.extracted_diagnoses,
    )
