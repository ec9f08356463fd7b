"""Message meta extension (structured data carried beside the body)."""

from __future__ import annotations

import json
import logging

from slixmpp.xmlstream import ET

META_NS = "urn:switch:message-meta"

log = logging.getLogger(__name__)


def build_message_meta(
    meta_type: str,
    *,
    meta_attrs: dict[str, str] | None = None,
    meta_payload: object | None = None,
) -> ET.Element:
    """Build a message meta extension element.

    Keeps structured data out of the message body, while remaining
    backward-compatible with clients that ignore unknown XML extensions.
    """

    meta = ET.Element(f"{{{META_NS}}}meta")
    meta.set("type", meta_type)

    if meta_attrs:
        for k, v in meta_attrs.items():
            if not k or v is None or k == "type":
                continue
            meta.set(str(k), str(v))

    if meta_payload is not None:
        payload = ET.SubElement(meta, f"{{{META_NS}}}payload")
        payload.set("format", "json")
        payload.text = json.dumps(meta_payload, ensure_ascii=True, separators=(",", ":"))

    return meta


def extract_meta(msg) -> tuple[str | None, dict[str, str], object | None]:
    """Extract the meta extension of a stanza: (type, attrs, payload)."""
    for child in getattr(msg, "xml", []) or []:
        if getattr(child, "tag", None) != f"{{{META_NS}}}meta":
            continue
        attrs = dict(getattr(child, "attrib", {}) or {})
        meta_type = attrs.get("type")

        payload_obj: object | None = None
        payload = child.find(f"{{{META_NS}}}payload")
        if payload is not None and (payload.get("format") or "").lower() == "json":
            raw = (payload.text or "").strip()
            if raw:
                payload_obj = json.loads(raw)

        return meta_type, attrs, payload_obj

    return None, {}, None
