"""Message codec: optional compression of oversized payloads and frame parsing."""

import base64
import binascii
import json
import zlib
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .config import RealtimeConfig
from .exceptions import ProtocolError
from .logging_config import get_logger
from .models import Envelope, InboundMessage, Priority, inbound_adapter, now_ms


ENCODING = "zlib+base64"


def serialize(payload: Any) -> str:
    """Compact JSON serialization used for size measurement and compression."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


class MessageCodec:
    """Compresses large outbound payloads and decodes inbound frames.

    The contract is: payloads below the threshold are never touched,
    compression is discarded unless it saves at least ``1 - min_ratio`` of
    the original size, and ``decompress(compress(x)) == x`` for every
    JSON-serializable ``x``.
    """

    def __init__(self, config: Optional[RealtimeConfig] = None):
        self.config = config or RealtimeConfig()
        self.logger = get_logger(__name__)

        self.enabled = self.config.compression_enabled
        self.threshold = self.config.compression_threshold_bytes
        self.min_ratio = self.config.compression_min_ratio
        self.max_payload_bytes = self.config.max_payload_bytes

        self._metrics = {
            "compressed": 0,
            "skipped_below_threshold": 0,
            "skipped_no_benefit": 0,
            "decompressed": 0,
            "rejected": 0,
        }

    def set_options(self, enabled: bool, threshold: int = 1024) -> None:
        """Toggle compression and change the size threshold at runtime."""
        self.enabled = enabled
        self.threshold = threshold
        self.logger.info(f"Compression {'enabled' if enabled else 'disabled'}, threshold: {threshold} bytes")

    def compress(self, payload: Any) -> Dict[str, Any]:
        """Return the envelope fields carrying ``payload``, compressed if worthwhile."""
        if not self.enabled:
            return {"payload": payload}

        raw = serialize(payload).encode("utf-8")
        original_size = len(raw)

        if original_size < self.threshold:
            self._metrics["skipped_below_threshold"] += 1
            return {"payload": payload}

        encoded = base64.b64encode(zlib.compress(raw, 6)).decode("ascii")

        if len(encoded) >= original_size * self.min_ratio:
            self._metrics["skipped_no_benefit"] += 1
            self.logger.debug(
                f"Compression discarded: {original_size} -> {len(encoded)} bytes is not worth it"
            )
            return {"payload": payload}

        self._metrics["compressed"] += 1
        self.logger.debug(
            f"Compressed payload: {original_size} -> {len(encoded)} bytes "
            f"({(1 - len(encoded) / original_size) * 100:.1f}% saved)"
        )
        return {
            "payload": encoded,
            "compressed": True,
            "originalSize": original_size,
            "encoding": ENCODING,
        }

    def decompress(self, fragment: Dict[str, Any]) -> Any:
        """Invert ``compress``; fragments without the marker pass through."""
        if not fragment.get("compressed"):
            return fragment.get("payload")

        encoding = fragment.get("encoding", ENCODING)
        if encoding != ENCODING:
            raise ProtocolError(f"unsupported encoding {encoding!r}")

        data = fragment.get("payload")
        if not isinstance(data, str):
            raise ProtocolError("compressed payload must be a string")

        # Bound the output so a small frame cannot inflate without limit
        inflater = zlib.decompressobj()
        try:
            compressed = base64.b64decode(data.encode("ascii"), validate=True)
            raw = inflater.decompress(compressed, self.max_payload_bytes + 1)
        except (binascii.Error, zlib.error, UnicodeEncodeError) as e:
            raise ProtocolError(f"cannot decompress payload: {e}") from e

        if len(raw) > self.max_payload_bytes or inflater.unconsumed_tail:
            raise ProtocolError(
                "decompressed payload exceeds size limit",
                size=fragment.get("originalSize"),
            )

        try:
            payload = json.loads(raw.decode("utf-8"))
        except ValueError as e:
            raise ProtocolError(f"decompressed payload is not valid JSON: {e}") from e

        self._metrics["decompressed"] += 1
        return payload

    def encode(self, event: str, payload: Any = None,
               priority: Priority = Priority.NORMAL) -> str:
        """Build an outbound wire frame."""
        fragment = self.compress(payload)
        frame = serialize({
            "event": event,
            "priority": priority.value,
            "timestamp": now_ms(),
            **fragment,
        })
        if len(frame.encode("utf-8")) > self.max_payload_bytes:
            self._metrics["rejected"] += 1
            raise ProtocolError("outbound frame exceeds size limit", event=event, size=len(frame))
        return frame

    def decode(self, raw: str) -> Envelope:
        """Parse and validate an inbound frame, decompressing its payload."""
        size = len(raw.encode("utf-8")) if isinstance(raw, str) else len(raw)
        if size > self.max_payload_bytes:
            self._metrics["rejected"] += 1
            raise ProtocolError("inbound frame exceeds size limit", size=size)

        try:
            data = json.loads(raw)
        except ValueError as e:
            self._metrics["rejected"] += 1
            raise ProtocolError(f"frame is not valid JSON: {e}", size=size) from e

        if not isinstance(data, dict):
            self._metrics["rejected"] += 1
            raise ProtocolError("frame must be a JSON object", size=size)

        try:
            envelope = Envelope.model_validate(data)
        except ValidationError as e:
            self._metrics["rejected"] += 1
            raise ProtocolError(f"invalid frame: {e.errors()[0]['msg']}", size=size) from e

        if envelope.compressed:
            envelope.payload = self.decompress(data)
            envelope.compressed = False
        return envelope

    def classify(self, envelope: Envelope) -> InboundMessage:
        """Turn a decoded envelope into one of the typed inbound messages."""
        event = envelope.event
        payload = envelope.payload
        body = payload if isinstance(payload, dict) else {}

        if event == "pong":
            data = {**body, "kind": "pong"}
        elif event == "sync_check_response":
            data = {**body, "kind": "sync_check_response"}
        elif event == "disconnect":
            data = {"kind": "server_notice", "event": event, "reason": str(body.get("reason", ""))}
        elif event in self.config.topic_events:
            if isinstance(payload, dict):
                data = {**body, "raw": payload}
                if "scopeId" not in body and "eventId" in body:
                    data["scopeId"] = body["eventId"]
            else:
                data = {"data": payload}
            data.update(kind="topic_update", event=event)
        else:
            data = {"kind": "event", "event": event, "payload": payload}

        try:
            return inbound_adapter.validate_python(data)
        except ValidationError as e:
            self._metrics["rejected"] += 1
            raise ProtocolError(f"invalid {event} message: {e.errors()[0]['msg']}", event=event) from e

    def parse(self, raw: str) -> InboundMessage:
        """Decode and classify one inbound frame."""
        return self.classify(self.decode(raw))

    def get_metrics(self) -> Dict[str, Any]:
        return {
            **self._metrics,
            "enabled": self.enabled,
            "threshold": self.threshold,
        }
