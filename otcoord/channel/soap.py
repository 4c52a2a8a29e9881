from __future__ import annotations
import xml.etree.ElementTree as ET
from typing import Any, Dict, Mapping, Tuple
from xml.sax.saxutils import quoteattr

SOAP_ENV = "http://schemas.xmlsoap.org/soap/envelope/"


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_request(command: str, params: Mapping[str, Any]) -> str:
    """SOAP envelope with one `<command attr=... />` element; None params are left out."""
    attrs = " ".join(f"{name}={quoteattr(_format_value(v))}" for name, v in params.items() if v is not None)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        f'<SOAP-ENV:Envelope xmlns:SOAP-ENV="{SOAP_ENV}">\n'
        "  <SOAP-ENV:Body>\n"
        f"    <{command} {attrs} />\n"
        "  </SOAP-ENV:Body>\n"
        "</SOAP-ENV:Envelope>"
    )


def parse_event(raw: str | bytes) -> Tuple[str, Dict[str, str]]:
    """Return (element name, attributes) of the single element in the SOAP body."""
    root = ET.fromstring(raw)
    body = root.find(f"{{{SOAP_ENV}}}Body")
    if body is None or len(body) == 0:
        raise ValueError("SOAP message without a body element")
    element = body[0]
    name = element.tag.split("}", 1)[-1]
    return name, dict(element.attrib)
