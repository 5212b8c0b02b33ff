from __future__ import annotations

from datetime import datetime

from lxml import etree

from emissor_nfe.config import BRT, NFE_NS
from emissor_nfe.services.fiscal_xml import build_cancel_event, build_nfe_proc, build_void_request

from tests.conftest import CNPJ, xml_text

KEY = "35261011222333000181650020000000421123456780"


class TestCancelEvent:
    def test_fields(self):
        evento = build_cancel_event(
            KEY, "135260000000001", "Cliente desistiu da compra", CNPJ, "homologacao",
            datetime(2026, 10, 19, 14, 30, tzinfo=BRT),
        )
        inf = evento.find(f"{{{NFE_NS}}}infEvento")
        assert inf.get("Id") == f"ID110111{KEY}01"
        assert xml_text(evento, "n:infEvento/n:cOrgao") == "35"
        assert xml_text(evento, "n:infEvento/n:tpAmb") == "2"
        assert xml_text(evento, "n:infEvento/n:chNFe") == KEY
        assert xml_text(evento, "n:infEvento/n:dhEvento") == "2026-10-19T14:30:00-03:00"
        assert xml_text(evento, "n:infEvento/n:detEvento/n:nProt") == "135260000000001"
        assert xml_text(evento, "n:infEvento/n:detEvento/n:xJust") == "Cliente desistiu da compra"

    def test_production_tp_amb(self):
        evento = build_cancel_event(
            KEY, "1", "Cliente desistiu da compra", CNPJ, "producao", datetime(2026, 1, 1, tzinfo=BRT)
        )
        assert xml_text(evento, "n:infEvento/n:tpAmb") == "1"


class TestVoidRequest:
    def test_id_and_range(self):
        inut = build_void_request(
            "nfce", 2, 7, 9, "Falha no envio, numeração perdida", CNPJ, "SP", "homologacao", 2026
        )
        inf = inut.find(f"{{{NFE_NS}}}infInut")
        assert inf.get("Id") == f"ID3526{CNPJ}65002000000007000000009"
        assert xml_text(inut, "n:infInut/n:mod") == "65"
        assert xml_text(inut, "n:infInut/n:nNFIni") == "7"
        assert xml_text(inut, "n:infInut/n:nNFFin") == "9"
        assert xml_text(inut, "n:infInut/n:xServ") == "INUTILIZAR"


def test_nfe_proc_wraps_signed_document():
    nfe = etree.Element(f"{{{NFE_NS}}}NFe", nsmap={None: NFE_NS})
    etree.SubElement(nfe, f"{{{NFE_NS}}}infNFe").set("Id", f"NFe{KEY}")
    signed = etree.tostring(nfe)

    proc_bytes = build_nfe_proc(
        signed,
        {"chNFe": KEY, "nProt": "135260000000001", "cStat": "100", "xMotivo": "Autorizado o uso da NF-e",
         "dhRecbto": "2026-10-19T10:00:00-03:00"},
        "homologacao",
    )
    proc = etree.fromstring(proc_bytes)
    assert proc.tag == f"{{{NFE_NS}}}nfeProc"
    assert proc.find(f"{{{NFE_NS}}}NFe/{{{NFE_NS}}}infNFe").get("Id") == f"NFe{KEY}"
    assert xml_text(proc, "n:protNFe/n:infProt/n:nProt") == "135260000000001"
    assert xml_text(proc, "n:protNFe/n:infProt/n:cStat") == "100"
