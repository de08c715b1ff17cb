"""Two-stage decoder for incident messages.

Stage one (``sniff_version``) reads only ``msg_version`` from the payload.
Stage two hands the payload to the decoder registered for that version in
``DECODERS``. A new wire format is supported by registering one more
function; the existing branches stay untouched.

``decode`` is the soft entry point used by the controller: malformed payloads
and unknown versions are logged and turned into ``None`` so a single poison
message cannot halt consumption.

Example:
    >>> decode(b'{"msg_version": 3, "command": "DELETE", "process_instance_id": "p1"}')
    DeleteByProcessInstance(process_instance_id='p1')
    >>> decode(b'not json') is None
    True
"""
from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel, ConfigDict, StrictInt, ValidationError

from libs.constants import ENVELOPE_DELETE, ENVELOPE_POST, ENVELOPE_PUT, LOG_PAYLOAD_PREVIEW
from libs.errors import DecodeError, MalformedMessage, UnknownSchemaVersion
from libs.models import (
    CreateOrReplace,
    DeleteByProcessDefinition,
    DeleteByProcessInstance,
    IncidentCommand,
    IncidentEnvelope,
    IncidentRecord,
)

logger = logging.getLogger(__name__)

Payload = Union[bytes, bytearray, str]
Decoder = Callable[[dict[str, Any]], Optional[IncidentCommand]]


class _VersionProbe(BaseModel):
    model_config = ConfigDict(extra="ignore")

    msg_version: StrictInt


def _load_object(payload: Payload) -> dict[str, Any]:
    try:
        data = json.loads(payload)
    except (ValueError, TypeError) as exc:
        raise MalformedMessage(f"payload is not valid JSON: {exc}") from exc
    except RecursionError as exc:
        raise MalformedMessage("payload is nested too deeply") from exc
    if not isinstance(data, dict):
        raise MalformedMessage("payload is not a JSON object")
    return data


def sniff_version(payload: Payload) -> int:
    """Return the ``msg_version`` of ``payload`` without validating the rest.

    Raises ``MalformedMessage`` when the payload is not a JSON object or the
    field is missing or not an integer.
    """
    data = _load_object(payload)
    try:
        return _VersionProbe.model_validate(data).msg_version
    except ValidationError as exc:
        raise MalformedMessage("missing or invalid msg_version") from exc


def decode_flat_record(data: dict[str, Any]) -> IncidentCommand:
    """Decode the legacy flat format (versions 1 and 2)."""
    try:
        record = IncidentRecord.model_validate(data)
    except ValidationError as exc:
        raise MalformedMessage(f"invalid incident record: {exc.error_count()} error(s)") from exc
    return CreateOrReplace(record)


def decode_envelope(data: dict[str, Any]) -> Optional[IncidentCommand]:
    """Decode the command envelope (version 3).

    The embedded incident is only validated for PUT and POST, and the
    envelope's ``msg_version`` overrides whatever it carries. A DELETE is
    decided by its identifiers alone; by definition wins over by instance.
    """
    try:
        envelope = IncidentEnvelope.model_validate(data)
    except ValidationError as exc:
        raise MalformedMessage(f"invalid incident envelope: {exc.error_count()} error(s)") from exc

    if envelope.command in (ENVELOPE_PUT, ENVELOPE_POST):
        if envelope.incident is None:
            return None
        return decode_flat_record({**envelope.incident, "msg_version": envelope.msg_version})

    if envelope.command == ENVELOPE_DELETE:
        if envelope.process_definition_id:
            return DeleteByProcessDefinition(envelope.process_definition_id)
        if envelope.process_instance_id:
            return DeleteByProcessInstance(envelope.process_instance_id)

    return None


DECODERS: dict[int, Decoder] = {
    1: decode_flat_record,
    2: decode_flat_record,
    3: decode_envelope,
}


def decode_strict(payload: Payload) -> Optional[IncidentCommand]:
    """Decode ``payload`` into a command, raising ``DecodeError`` on bad input.

    Returns ``None`` for well-formed messages that carry nothing to do
    (for example a DELETE without identifiers).
    """
    version = sniff_version(payload)
    decoder = DECODERS.get(version)
    if decoder is None:
        raise UnknownSchemaVersion(version)
    return decoder(_load_object(payload))


def _preview(payload: Payload) -> str:
    text = payload.decode("utf-8", errors="replace") if isinstance(payload, (bytes, bytearray)) else str(payload)
    if len(text) > LOG_PAYLOAD_PREVIEW:
        return text[:LOG_PAYLOAD_PREVIEW] + "..."
    return text


def decode(payload: Payload) -> Optional[IncidentCommand]:
    """Decode ``payload``; never raises on bad input.

    Returns ``None`` and logs a warning when the payload is malformed or of an
    unknown version, and logs at debug level when it is valid but carries no
    actionable command.
    """
    try:
        command = decode_strict(payload)
    except DecodeError as exc:
        logger.warning("unable to decode incident message -> ignore (%s): %s", exc, _preview(payload))
        return None
    if command is None:
        logger.debug("incident message carries no command -> ignore: %s", _preview(payload))
    return command
