"""
Response decoding for the process-image endpoint.

The backend has answered with a few different bodies over time, so the
decoder runs an ordered list of matchers and keeps the first one that
recognizes the body:

1. enveloped:  {"data": {"processed_image_base64": ..., "metadata": {...}}}
2. direct:     {"processed_image_base64": ..., "metadata": {...}}
3. loose:      processed_image_base64 + metadata at the top level or under
               "data", with missing metadata fields tolerated

Every matcher is a pure function returning Matched or Unmatched.
"""
import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple, Union

from pydantic import ValidationError

from photostyle.errors import ImageDecodeFailed, InvalidResponse
from photostyle.logging_config import safe_preview
from photostyle.schemas import ProcessedResult, ProcessImageEnvelope, ProcessImageResponse
from photostyle.utils import ensure_allowed_image

log = logging.getLogger("photostyle.decoder")

DATA_URL_MARKER = "base64,"

@dataclass(frozen=True)
class Matched:
    result: ProcessedResult

@dataclass(frozen=True)
class Unmatched:
    reason: str

MatchOutcome = Union[Matched, Unmatched]
Matcher = Callable[[Any], MatchOutcome]

def strip_data_url(payload: str) -> str:
    idx = payload.find(DATA_URL_MARKER)
    if idx == -1:
        return payload.strip()
    return payload[idx + len(DATA_URL_MARKER):].strip()

def _from_response(resp: ProcessImageResponse) -> ProcessedResult:
    meta = resp.metadata
    return ProcessedResult(
        image_payload=strip_data_url(resp.processed_image_base64),
        template_id=meta.template_id,
        template_name=meta.template_name,
        model_used=meta.model_used,
        generation_time_ms=meta.generation_time_ms,
        processed_width=meta.processed_dimensions.width,
        processed_height=meta.processed_dimensions.height,
    )

def match_enveloped(doc: Any) -> MatchOutcome:
    try:
        env = ProcessImageEnvelope.model_validate(doc)
    except ValidationError as e:
        return Unmatched(f"enveloped: {e.error_count()} validation error(s)")
    return Matched(_from_response(env.data))

def match_direct(doc: Any) -> MatchOutcome:
    try:
        resp = ProcessImageResponse.model_validate(doc)
    except ValidationError as e:
        return Unmatched(f"direct: {e.error_count()} validation error(s)")
    return Matched(_from_response(resp))

def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0

def _find_loose(doc: Any) -> Optional[Tuple[str, dict]]:
    if not isinstance(doc, dict):
        return None
    candidates = [doc]
    if isinstance(doc.get("data"), dict):
        candidates.append(doc["data"])
    for c in candidates:
        payload = c.get("processed_image_base64")
        metadata = c.get("metadata")
        if isinstance(payload, str) and payload and isinstance(metadata, dict):
            return payload, metadata
    return None

def match_loose(doc: Any) -> MatchOutcome:
    found = _find_loose(doc)
    if found is None:
        return Unmatched("loose: no processed_image_base64 + metadata at top level or under data")
    payload, meta = found
    dims = meta.get("processed_dimensions")
    if not isinstance(dims, dict):
        dims = {}
    return Matched(ProcessedResult(
        image_payload=strip_data_url(payload),
        template_id=str(meta.get("template_id") or ""),
        template_name=str(meta.get("template_name") or ""),
        model_used=str(meta.get("model_used") or ""),
        generation_time_ms=_as_int(meta.get("generation_time_ms")),
        processed_width=_as_int(dims.get("width")),
        processed_height=_as_int(dims.get("height")),
    ))

MATCHERS: List[Matcher] = [match_enveloped, match_direct, match_loose]

def envelope_error_message(doc: Any) -> Optional[str]:
    """
    Backend errors look like:
    { "success": false, "error": { "code": "...", "message": "..." } }
    """
    if not isinstance(doc, dict):
        return None
    err = doc.get("error")
    if isinstance(err, dict):
        msg = err.get("message")
        if isinstance(msg, dict):
            msg = msg.get("error") or msg.get("message")
        return str(msg or err.get("code") or json.dumps(err))
    if isinstance(err, str):
        return err
    return None

def envelope_error_code(doc: Any) -> Optional[str]:
    if isinstance(doc, dict) and isinstance(doc.get("error"), dict):
        code = doc["error"].get("code")
        return str(code) if code else None
    return None

def parse_json(body: Union[bytes, str]) -> Any:
    if isinstance(body, bytes):
        body = body.decode("utf-8")
    return json.loads(body)

def decode_response(body: Union[bytes, str], preview_chars: int = 1000) -> ProcessedResult:
    raw = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
    try:
        doc = parse_json(body)
    except (UnicodeDecodeError, ValueError) as e:
        log.error("Non-JSON response body: %s", safe_preview(raw, preview_chars))
        raise InvalidResponse(f"Response is not JSON: {e}") from e

    reasons = []
    for matcher in MATCHERS:
        outcome = matcher(doc)
        if isinstance(outcome, Matched):
            log.info("Response matched by %s", matcher.__name__)
            return outcome.result
        reasons.append(outcome.reason)

    server_msg = envelope_error_message(doc)
    log.error("Undecodable response (%s) body=%s", "; ".join(reasons), safe_preview(raw, preview_chars))
    if server_msg:
        raise InvalidResponse(f"Server returned error: {server_msg}")
    raise InvalidResponse("Response matched no known shape")

def decode_image(payload: str) -> bytes:
    """Strip an optional data-URL prefix, base64-decode and check the bytes form an image."""
    stripped = strip_data_url(payload)
    try:
        data = base64.b64decode(stripped, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ImageDecodeFailed(f"Malformed base64 image payload: {e}") from e
    if not data:
        raise ImageDecodeFailed("Empty image payload")
    try:
        ensure_allowed_image(data)
    except ValueError as e:
        raise ImageDecodeFailed(str(e)) from e
    return data
