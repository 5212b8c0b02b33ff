from __future__ import annotations

from datetime import datetime

from lxml import etree

from emissor_nfe.config import NFE_NS, TP_AMB
from emissor_nfe.models.document import MODELO
from emissor_nfe.utils.access_key import CODIGO_UF

NSMAP = {None: NFE_NS}

CANCEL_EVENT = "110111"


def _el(tag: str, **attrs: str) -> etree._Element:
    el = etree.Element(f"{{{NFE_NS}}}{tag}", nsmap=NSMAP)  # type: ignore[arg-type]
    for k, v in attrs.items():
        el.set(k, v)
    return el


def _sub(parent: etree._Element, tag: str, text: str | None = None) -> etree._Element:
    el = etree.SubElement(parent, f"{{{NFE_NS}}}{tag}")
    if text is not None:
        el.text = text
    return el


def build_cancel_event(
    access_key: str,
    protocol: str,
    justification: str,
    cnpj: str,
    env: str,
    event_at: datetime,
    sequence: int = 1,
) -> etree._Element:
    """Build the unsigned ``<evento>`` for cancellation (tpEvento 110111)."""
    evento = _el("evento", versao="1.00")
    inf = _sub(evento, "infEvento")
    inf.set("Id", f"ID{CANCEL_EVENT}{access_key}{sequence:02d}")
    _sub(inf, "cOrgao", access_key[:2])
    _sub(inf, "tpAmb", TP_AMB[env])
    _sub(inf, "CNPJ", cnpj)
    _sub(inf, "chNFe", access_key)
    _sub(inf, "dhEvento", event_at.isoformat(timespec="seconds"))
    _sub(inf, "tpEvento", CANCEL_EVENT)
    _sub(inf, "nSeqEvento", str(sequence))
    _sub(inf, "verEvento", "1.00")
    det = _sub(inf, "detEvento")
    det.set("versao", "1.00")
    _sub(det, "descEvento", "Cancelamento")
    _sub(det, "nProt", protocol)
    _sub(det, "xJust", justification)
    return evento


def build_void_request(
    doc_type: str,
    series: int,
    first: int,
    last: int,
    justification: str,
    cnpj: str,
    uf: str,
    env: str,
    year: int,
) -> etree._Element:
    """Build the unsigned ``<inutNFe>`` voiding a range of unused numbers."""
    c_uf = CODIGO_UF[uf.upper()]
    ano = f"{year % 100:02d}"
    modelo = MODELO[doc_type]
    inut = _el("inutNFe", versao="4.00")
    inf = _sub(inut, "infInut")
    inf.set("Id", f"ID{c_uf}{ano}{cnpj}{modelo}{series:03d}{first:09d}{last:09d}")
    _sub(inf, "tpAmb", TP_AMB[env])
    _sub(inf, "xServ", "INUTILIZAR")
    _sub(inf, "cUF", c_uf)
    _sub(inf, "ano", ano)
    _sub(inf, "CNPJ", cnpj)
    _sub(inf, "mod", modelo)
    _sub(inf, "serie", str(series))
    _sub(inf, "nNFIni", str(first))
    _sub(inf, "nNFFin", str(last))
    _sub(inf, "xJust", justification)
    return inut


def build_nfe_proc(signed_nfe: bytes, data: dict, env: str) -> bytes:
    """Wrap a signed NFe and the authority's protocol fields into ``<nfeProc>``."""
    proc = _el("nfeProc", versao="4.00")
    proc.append(etree.fromstring(signed_nfe))
    prot = _sub(proc, "protNFe")
    prot.set("versao", "4.00")
    inf = _sub(prot, "infProt")
    _sub(inf, "tpAmb", TP_AMB[env])
    _sub(inf, "chNFe", str(data.get("chNFe", "")))
    _sub(inf, "dhRecbto", str(data.get("dhRecbto", "")))
    _sub(inf, "nProt", str(data.get("nProt", "")))
    _sub(inf, "cStat", str(data.get("cStat", "")))
    _sub(inf, "xMotivo", str(data.get("xMotivo", "")))
    return etree.tostring(proc, xml_declaration=True, encoding="utf-8")
