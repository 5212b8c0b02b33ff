from __future__ import annotations

import base64
import gzip

from lxml import etree

from emissor_nfe.services.xml_encoder import decode_xml, encode_xml, to_bytes


def test_encode_is_gzip_base64():
    root = etree.Element("NFe")
    root.text = "venda"

    encoded = encode_xml(root)

    xml_bytes = gzip.decompress(base64.b64decode(encoded))
    assert xml_bytes.startswith(b"<?xml")
    assert b"<NFe>venda</NFe>" in xml_bytes


def test_decode_reverses_encode():
    root = etree.Element("nfeProc")
    etree.SubElement(root, "protNFe").text = "135"
    assert decode_xml(encode_xml(root)) == to_bytes(root)
