from __future__ import annotations

import base64
import gzip

from lxml import etree


def to_bytes(element: etree._Element) -> bytes:
    return etree.tostring(element, xml_declaration=True, encoding="utf-8")


def encode_xml(element: etree._Element) -> str:
    """GZip compress and Base64 encode a signed XML element for the JSON envelope."""
    compressed = gzip.compress(to_bytes(element))
    return base64.b64encode(compressed).decode("ascii")


def decode_xml(b64: str) -> bytes:
    """Reverse of encode_xml for documents returned by the authority."""
    return gzip.decompress(base64.b64decode(b64))
