"""
Extraction service: image bytes + training examples -> RawFields for one model call.
Uses ILLMProvider (injected); maps transport failures onto the pipeline's exception taxonomy.
"""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Callable, Sequence

import requests
from pydantic import ValidationError

from core.exceptions import (
    ConsignmentError,
    InvalidImage,
    ModelProtocolError,
    ModelUnavailable,
    RateLimited,
    TransientModelError,
)
from core.interfaces import IExtractionService, ILLMProvider
from core.models import RawFields, TrainingExample
from core.schema import RawFieldsSchema
from prompts import load_prompt
from utils.image_utils import image_to_data_url, validate_image_bytes
from utils.retry import with_retry

logger = logging.getLogger(__name__)

EXTRACTION_PROMPT_FILE = "extraction_prompt.txt"
DEFAULT_MAX_TRAINING_EXAMPLES = 10
_INVALID_IMAGE_STATUSES = (400, 413, 415)
_RETRY_HINT = re.compile(r"try again in\s+([\d.]+)\s*(ms|s)", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Transport error mapping
# ---------------------------------------------------------------------------


def _retry_after_sec(response: requests.Response | None) -> float | None:
    if response is None:
        return None
    header = response.headers.get("Retry-After") if response.headers else None
    if header:
        try:
            return float(header)
        except ValueError:
            pass
    m = _RETRY_HINT.search(response.text or "")
    if m:
        value = float(m.group(1))
        return value / 1000.0 + 0.25 if m.group(2).lower() == "ms" else value
    return None


def map_request_error(exc: requests.RequestException, provider: str = "") -> ConsignmentError:
    """Translate a requests failure into RateLimited / ModelUnavailable / InvalidImage / ModelProtocolError."""
    label = provider or "provider"
    if isinstance(exc, requests.exceptions.JSONDecodeError):
        return ModelProtocolError(f"{label} returned a non-JSON HTTP body: {exc}")
    if isinstance(exc, requests.Timeout):
        return ModelUnavailable(f"{label} timed out: {exc}")
    if isinstance(exc, requests.ConnectionError):
        return ModelUnavailable(f"{label} unreachable: {exc}")
    if isinstance(exc, requests.HTTPError):
        response = exc.response
        status = response.status_code if response is not None else 0
        if status == 429:
            return RateLimited(f"{label} rate limited (429)", retry_after_sec=_retry_after_sec(response))
        if status in _INVALID_IMAGE_STATUSES:
            return InvalidImage(f"{label} rejected the image ({status})")
        return ModelUnavailable(f"{label} HTTP {status}: {exc}")
    return ModelUnavailable(f"{label} request failed: {exc}")


# ---------------------------------------------------------------------------
# Response parsing and JSON repair
# ---------------------------------------------------------------------------


_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*(?:```|$)")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_DANGLING_KEY = re.compile(r'([{,])\s*"[^"]*"\s*:?\s*$')


def _scan_json_object(s: str) -> tuple[int, list[str], bool]:
    """
    Walk s from its first character (an opening brace), tracking strings and nesting.
    Returns (end index of the balanced object or -1, open-bracket stack, inside-string flag).
    """
    stack: list[str] = []
    in_string = False
    escaped = False
    for i, ch in enumerate(s):
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
        elif ch in "{[":
            stack.append(ch)
        elif ch in "}]":
            if stack:
                stack.pop()
            if not stack:
                return i, stack, False
    return -1, stack, in_string


def repair_json_text(raw: str) -> str:
    """
    Best-effort cleanup of model JSON: strip markdown fences, keep the first brace-balanced
    object, drop trailing commas. Truncated output gets its open string, arrays and braces closed.
    Raises ModelProtocolError when no object is present.
    """
    s = (raw or "").strip()
    m = _FENCE.search(s)
    if m:
        s = m.group(1).strip()
    start = s.find("{")
    if start < 0:
        raise ModelProtocolError("No JSON object in model response")
    s = s[start:]
    end, stack, in_string = _scan_json_object(s)
    if end >= 0:
        s = s[: end + 1]
    else:
        if in_string:
            s += '"'
        s = _DANGLING_KEY.sub(r"\1", s.rstrip())
        s = s.rstrip().rstrip(",")
        closers = {"{": "}", "[": "]"}
        s += "".join(closers[c] for c in reversed(stack))
        logger.warning("Model JSON was truncated; closed %d open bracket(s)", len(stack))
    return _TRAILING_COMMA.sub(r"\1", s)


def parse_extraction_response(raw: str) -> RawFields:
    """Model text -> RawFields. Raises ModelProtocolError on unusable payloads."""
    text = repair_json_text(raw)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ModelProtocolError(f"Invalid JSON from model: {e}") from e
    if not isinstance(data, dict):
        raise ModelProtocolError(f"Expected a JSON object, got {type(data).__name__}")
    try:
        return RawFieldsSchema.model_validate(data).to_raw_fields()
    except ValidationError as e:
        raise ModelProtocolError(f"Model JSON does not match receipt schema: {e}") from e
    except (ValueError, TypeError, ArithmeticError) as e:
        raise ModelProtocolError(f"Model JSON has unusable values: {e}") from e


# ---------------------------------------------------------------------------
# Prompt context
# ---------------------------------------------------------------------------


def load_training_examples(
    examples: Sequence[TrainingExample],
    limit: int = DEFAULT_MAX_TRAINING_EXAMPLES,
) -> list[TrainingExample]:
    """ACCEPT decisions only, most recent first, one per image hash, at most limit."""
    accepted = [e for e in examples if (e.decision or "").strip().upper() == "ACCEPT"]
    accepted.sort(key=lambda e: e.trained_at, reverse=True)
    seen: set[str] = set()
    out: list[TrainingExample] = []
    for example in accepted:
        if example.image_hash:
            if example.image_hash in seen:
                continue
            seen.add(example.image_hash)
        out.append(example)
        if len(out) >= max(0, limit):
            break
    return out


_EXAMPLE_LABELS: tuple[tuple[str, str], ...] = (
    ("bank_name", "Banco"),
    ("city", "Ciudad"),
    ("account_or_convenio", "Cuenta/Convenio"),
    ("amount", "Monto"),
    ("date", "Fecha"),
    ("time", "Hora"),
    ("rrn", "RRN"),
    ("receipt_number", "RECIBO"),
    ("approval_code", "APRO"),
    ("operation_number", "Operación"),
    ("voucher_number", "Comprobante"),
    ("transaction_id", "CUS/ID transacción"),
    ("payment_reference", "Referencia pago"),
    ("client_code", "Código cliente"),
)


def _format_example(index: int, example: TrainingExample) -> str:
    d = example.correct_data
    lines = [f"Tipo: {example.receipt_type}", f"Decisión: {example.decision}"]
    for attr, label in _EXAMPLE_LABELS:
        value = getattr(d, attr)
        if value not in (None, ""):
            lines.append(f"{label}: {value}")
    if example.reason:
        lines.append(f"Razón: {example.reason}")
    if example.notes:
        lines.append(f"Notas: {example.notes}")
    return f"EJEMPLO {index}:\n  " + "\n  ".join(lines)


def build_extraction_prompt(examples: Sequence[TrainingExample] = ()) -> str:
    template = load_prompt(EXTRACTION_PROMPT_FILE)
    if not examples:
        return template.replace("{training_section}", "")
    body = "\n\n".join(_format_example(i, e) for i, e in enumerate(examples, start=1))
    section = (
        f"EJEMPLOS VERIFICADOS POR HUMANOS ({len(examples)}):\n"
        "Si la imagen se parece a un ejemplo, extrae los datos de la misma forma. "
        "Las notas del revisor son instrucciones.\n\n"
        f"{body}\n"
    )
    return template.replace("{training_section}", section)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class ExtractionService(IExtractionService):
    """Receipt extraction through one injected provider. Deterministic params (temperature=0, JSON mode)."""

    def __init__(
        self,
        llm_provider: ILLMProvider,
        *,
        name: str | None = None,
        model: str = "",
        max_retries: int = 3,
        retry_delay_sec: float = 1.2,
        max_tokens: int = 2500,
        max_training_examples: int = DEFAULT_MAX_TRAINING_EXAMPLES,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._llm = llm_provider
        self._name = name or getattr(llm_provider, "name", "") or type(llm_provider).__name__
        self._model = model
        self._max_retries = max_retries
        self._retry_delay_sec = retry_delay_sec
        self._max_tokens = max_tokens
        self._max_training_examples = max_training_examples
        self._sleep = sleep

    @property
    def provider_name(self) -> str:
        return self._name

    def _messages(self, image_bytes: bytes, mime_type: str, prompt: str) -> list[dict[str, Any]]:
        return [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": image_to_data_url(image_bytes, mime_type)}},
                ],
            }
        ]

    def extract(
        self,
        image_bytes: bytes,
        mime_type: str = "image/jpeg",
        prompt_context: Sequence[TrainingExample] = (),
    ) -> RawFields:
        detected = validate_image_bytes(image_bytes)
        examples = load_training_examples(prompt_context, self._max_training_examples)
        messages = self._messages(image_bytes, mime_type or detected, build_extraction_prompt(examples))

        def _call() -> str:
            try:
                return self._llm.chat_vision(
                    messages,
                    model=self._model or None,
                    max_tokens=self._max_tokens,
                    temperature=0.0,
                    response_format={"type": "json_object"},
                )
            except requests.RequestException as e:
                raise map_request_error(e, self._name) from e

        logger.info("Calling %s for extraction (examples=%d)", self._name, len(examples))
        text = with_retry(
            _call,
            max_attempts=self._max_retries,
            delay_sec=self._retry_delay_sec,
            backoff=True,
            retry_exceptions=(TransientModelError,),
            sleep=self._sleep,
        )
        if not text:
            raise ModelProtocolError(f"{self._name} returned an empty response")
        raw = parse_extraction_response(text)
        logger.debug(
            "%s extraction: confidence=%s quality=%s primary_id=%s",
            self._name,
            raw.confidence_score,
            raw.image_quality_score,
            raw.primary_identifier,
        )
        return raw
