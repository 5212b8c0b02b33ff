"""Sale -> NF-e/NFC-e payload.

``build`` is a pure transform that validates everything up front and reports
all problems at once; ``render_xml`` turns an accepted payload plus the
reserved number into the ``<NFe>`` element that gets signed.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal

from lxml import etree

from emissor_nfe.config import NFE_NS, TP_AMB
from emissor_nfe.models.document import MODELO, NFCE, NFE
from emissor_nfe.models.issuer import IssuerFiscalProfile
from emissor_nfe.models.sale import Customer, Sale
from emissor_nfe.services.exceptions import ValidationFailed
from emissor_nfe.utils.access_key import CODIGO_UF, build_access_key
from emissor_nfe.utils.validators import validate_cest, validate_cfop, validate_cpf_cnpj, validate_ncm

NSMAP = {None: NFE_NS}

SANDBOX_RECIPIENT = "NF-E EMITIDA EM AMBIENTE DE HOMOLOGACAO - SEM VALOR FISCAL"
SANDBOX_ITEM = "NOTA FISCAL EMITIDA EM AMBIENTE DE HOMOLOGACAO - SEM VALOR FISCAL"

# Sale payment method -> tPag
PAYMENT_CODES = {
    "dinheiro": "01",
    "cheque": "02",
    "cartao_credito": "03",
    "credito": "03",
    "cartao_debito": "04",
    "debito": "04",
    "boleto": "15",
    "pix": "17",
    "outros": "99",
}

# (PIS rate, COFINS rate) in percent, cumulative vs non-cumulative regimes
PIS_COFINS_RATES = {
    "lucro_presumido": (Decimal("0.65"), Decimal("3.00")),
    "lucro_real": (Decimal("1.65"), Decimal("7.60")),
}

CENTS = Decimal("0.01")
TOLERANCE = Decimal("0.01")


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def _pct(base: Decimal, rate: Decimal) -> Decimal:
    return _money(base * rate / Decimal("100"))


@dataclass(frozen=True)
class TaxInputs:
    """Per-item tax computation inputs, chosen by the issuer's regime."""

    icms_group: str  # ICMSSN102 | ICMS00
    origem: str
    csosn: str | None
    icms_cst: str | None
    icms_base: Decimal
    icms_rate: Decimal
    icms_value: Decimal
    pis_cst: str
    pis_rate: Decimal
    pis_value: Decimal
    cofins_cst: str
    cofins_rate: Decimal
    cofins_value: Decimal


@dataclass(frozen=True)
class ItemLine:
    n_item: int
    codigo: str
    ean: str
    descricao: str
    ncm: str
    cest: str | None
    cfop: str
    unidade: str
    quantidade: Decimal
    valor_unitario: Decimal
    valor_total: Decimal
    desconto: Decimal
    taxes: TaxInputs


@dataclass(frozen=True)
class PaymentBlock:
    t_pag: str
    valor: Decimal


@dataclass(frozen=True)
class TotalsBlock:
    v_prod: Decimal
    v_desc: Decimal
    v_nf: Decimal
    v_bc: Decimal
    v_icms: Decimal
    v_pis: Decimal
    v_cofins: Decimal


@dataclass(frozen=True)
class NFePayload:
    doc_type: str
    sale_id: str
    issuer: IssuerFiscalProfile
    customer: Customer | None
    items: tuple[ItemLine, ...]
    payment: PaymentBlock
    totals: TotalsBlock

    @property
    def modelo(self) -> str:
        return MODELO[self.doc_type]


def _check_profile(profile: IssuerFiscalProfile, problems: list[tuple[str, str]]) -> None:
    for name in profile.missing_requirements():
        problems.append((f"emitente.{name}", "não informado"))
    if profile.uf and profile.uf.upper() not in CODIGO_UF:
        problems.append(("emitente.uf", f"UF desconhecida: {profile.uf}"))
    if profile.cod_municipio and not re.fullmatch(r"\d{7}", profile.cod_municipio):
        problems.append(("emitente.cod_municipio", "deve ter 7 dígitos (código IBGE)"))


def _check_customer(
    customer: Customer | None,
    doc_type: str,
    problems: list[tuple[str, str]],
) -> None:
    if customer is None:
        if doc_type == NFE:
            problems.append(("destinatario", "obrigatório para NF-e"))
        return
    try:
        validate_cpf_cnpj(customer.documento)
    except ValueError as e:
        problems.append(("destinatario.cpf_cnpj", str(e)))
    if not customer.nome.strip():
        problems.append(("destinatario.nome", "não informado"))
    if doc_type == NFE and not customer.has_address:
        problems.append(("destinatario.endereco", "obrigatório para NF-e"))


def _check_items(sale: Sale, doc_type: str, problems: list[tuple[str, str]]) -> None:
    if not sale.itens:
        problems.append(("itens", "venda sem itens"))
        return
    for i, item in enumerate(sale.itens, start=1):
        prefix = f"itens[{i}]"
        produto = item.produto
        nome = produto.nome or produto.codigo or str(i)
        if not produto.ncm:
            problems.append((f"{prefix}.ncm", f"produto '{nome}' sem NCM"))
        else:
            try:
                validate_ncm(produto.ncm)
            except ValueError as e:
                problems.append((f"{prefix}.ncm", f"produto '{nome}': {e}"))
        if not produto.unidade_comercial:
            problems.append((f"{prefix}.unidade", f"produto '{nome}' sem unidade comercial"))
        if not produto.nome.strip():
            problems.append((f"{prefix}.descricao", "produto sem descrição"))
        try:
            validate_cfop(produto.cfop)
        except ValueError as e:
            problems.append((f"{prefix}.cfop", f"produto '{nome}': {e}"))
        else:
            if doc_type == NFCE and not produto.cfop.startswith("5"):
                problems.append((f"{prefix}.cfop", f"produto '{nome}': NFC-e exige CFOP 5xxx"))
        if produto.cest:
            try:
                validate_cest(produto.cest)
            except ValueError as e:
                problems.append((f"{prefix}.cest", f"produto '{nome}': {e}"))
        if item.quantidade <= 0:
            problems.append((f"{prefix}.quantidade", "deve ser positiva"))
        if item.preco_unitario <= 0:
            problems.append((f"{prefix}.preco_unitario", "deve ser positivo"))
        elif abs(item.quantidade * item.preco_unitario - item.subtotal) > TOLERANCE:
            problems.append((f"{prefix}.subtotal", "diferente de quantidade x preço unitário"))


def _check_totals(sale: Sale, problems: list[tuple[str, str]]) -> None:
    if not sale.itens:
        return
    v_prod = sum((i.subtotal for i in sale.itens), Decimal("0"))
    if abs(v_prod - sale.valor_total) > TOLERANCE:
        problems.append(("valor_total", f"soma dos itens ({v_prod:.2f}) difere do total da venda"))
    if sale.desconto < 0 or sale.desconto >= v_prod:
        problems.append(("desconto", "deve ser >= 0 e menor que o total"))
    if abs(sale.valor_total - sale.desconto - sale.valor_final) > TOLERANCE:
        problems.append(("valor_final", "diferente de total menos desconto"))
    if sale.forma_pagamento not in PAYMENT_CODES:
        problems.append(("forma_pagamento", f"não suportada: '{sale.forma_pagamento}'"))


def _prorate_discount(sale: Sale) -> list[Decimal]:
    """Split the sale discount across items in proportion to their subtotals.

    Shares are floored to the cent and the leftover cents go to the items with
    the largest remainders, so every share stays between zero and its item value.
    """
    if not sale.desconto:
        return [Decimal("0.00")] * len(sale.itens)
    total = _money(sale.desconto)
    v_prod = sum((i.subtotal for i in sale.itens), Decimal("0"))
    exact = [total * i.subtotal / v_prod for i in sale.itens]
    shares = [e.quantize(CENTS, rounding=ROUND_DOWN) for e in exact]
    leftover = int((total - sum(shares, Decimal("0"))) / CENTS)
    by_remainder = sorted(range(len(shares)), key=lambda i: exact[i] - shares[i], reverse=True)
    for i in by_remainder[:leftover]:
        shares[i] += CENTS
    return shares


def _taxes_for(profile: IssuerFiscalProfile, produto, base: Decimal) -> TaxInputs:
    if profile.regime_tributario == "simples_nacional":
        return TaxInputs(
            icms_group="ICMSSN102",
            origem=produto.origem,
            csosn=produto.csosn or "102",
            icms_cst=None,
            icms_base=Decimal("0.00"),
            icms_rate=Decimal("0.00"),
            icms_value=Decimal("0.00"),
            pis_cst="49",
            pis_rate=Decimal("0.00"),
            pis_value=Decimal("0.00"),
            cofins_cst="49",
            cofins_rate=Decimal("0.00"),
            cofins_value=Decimal("0.00"),
        )
    icms_rate = Decimal(profile.aliquota_icms)
    pis_rate, cofins_rate = PIS_COFINS_RATES[profile.regime_tributario]
    return TaxInputs(
        icms_group="ICMS00",
        origem=produto.origem,
        csosn=None,
        icms_cst="00",
        icms_base=base,
        icms_rate=icms_rate,
        icms_value=_pct(base, icms_rate),
        pis_cst="01",
        pis_rate=pis_rate,
        pis_value=_pct(base, pis_rate),
        cofins_cst="01",
        cofins_rate=cofins_rate,
        cofins_value=_pct(base, cofins_rate),
    )


def build(
    sale: Sale,
    profile: IssuerFiscalProfile,
    doc_type: str,
    customer: Customer | None = None,
) -> NFePayload:
    """Validate *sale* and assemble the payload.

    Raises ValidationFailed listing every (field, reason) problem found.
    """
    if doc_type not in MODELO:
        raise ValueError(f"Tipo de documento desconhecido: '{doc_type}'")
    customer = customer or sale.cliente

    problems: list[tuple[str, str]] = []
    _check_profile(profile, problems)
    _check_customer(customer, doc_type, problems)
    _check_items(sale, doc_type, problems)
    _check_totals(sale, problems)
    if problems:
        raise ValidationFailed(problems)

    discounts = _prorate_discount(sale)
    items = []
    for n, (item, desc) in enumerate(zip(sale.itens, discounts), start=1):
        produto = item.produto
        total = _money(item.subtotal)
        items.append(
            ItemLine(
                n_item=n,
                codigo=produto.codigo or str(n),
                ean=produto.ean,
                descricao=produto.nome,
                ncm=produto.ncm,
                cest=produto.cest,
                cfop=produto.cfop,
                unidade=produto.unidade_comercial,
                quantidade=item.quantidade,
                valor_unitario=item.preco_unitario,
                valor_total=total,
                desconto=desc,
                taxes=_taxes_for(profile, produto, total - desc),
            )
        )

    v_prod = sum((i.valor_total for i in items), Decimal("0"))
    v_desc = _money(sale.desconto)
    totals = TotalsBlock(
        v_prod=v_prod,
        v_desc=v_desc,
        v_nf=v_prod - v_desc,
        v_bc=sum((i.taxes.icms_base for i in items), Decimal("0")),
        v_icms=sum((i.taxes.icms_value for i in items), Decimal("0")),
        v_pis=sum((i.taxes.pis_value for i in items), Decimal("0")),
        v_cofins=sum((i.taxes.cofins_value for i in items), Decimal("0")),
    )
    return NFePayload(
        doc_type=doc_type,
        sale_id=sale.id,
        issuer=profile,
        customer=customer,
        items=tuple(items),
        payment=PaymentBlock(t_pag=PAYMENT_CODES[sale.forma_pagamento], valor=totals.v_nf),
        totals=totals,
    )


# --- XML rendering ---


def _sub(parent: etree._Element, tag: str, text: str | None = None) -> etree._Element:
    el = etree.SubElement(parent, f"{{{NFE_NS}}}{tag}")
    if text is not None:
        el.text = text
    return el


def _fmt(value: Decimal, places: int = 2) -> str:
    return f"{value:.{places}f}"


def _render_items(inf: etree._Element, payload: NFePayload, sandbox: bool) -> None:
    for item in payload.items:
        det = _sub(inf, "det")
        det.set("nItem", str(item.n_item))
        prod = _sub(det, "prod")
        _sub(prod, "cProd", item.codigo[:60])
        _sub(prod, "cEAN", item.ean)
        descricao = item.descricao
        if sandbox and payload.doc_type == NFCE and item.n_item == 1:
            descricao = SANDBOX_ITEM
        _sub(prod, "xProd", descricao[:120])
        _sub(prod, "NCM", item.ncm)
        if item.cest:
            _sub(prod, "CEST", item.cest)
        _sub(prod, "CFOP", item.cfop)
        _sub(prod, "uCom", item.unidade[:6])
        _sub(prod, "qCom", _fmt(item.quantidade, 4))
        _sub(prod, "vUnCom", _fmt(item.valor_unitario, 10))
        _sub(prod, "vProd", _fmt(item.valor_total))
        _sub(prod, "cEANTrib", item.ean)
        _sub(prod, "uTrib", item.unidade[:6])
        _sub(prod, "qTrib", _fmt(item.quantidade, 4))
        _sub(prod, "vUnTrib", _fmt(item.valor_unitario, 10))
        if item.desconto:
            _sub(prod, "vDesc", _fmt(item.desconto))
        _sub(prod, "indTot", "1")

        t = item.taxes
        imposto = _sub(det, "imposto")
        icms = _sub(_sub(imposto, "ICMS"), t.icms_group)
        _sub(icms, "orig", t.origem)
        if t.icms_group == "ICMSSN102":
            _sub(icms, "CSOSN", t.csosn)
        else:
            _sub(icms, "CST", t.icms_cst)
            _sub(icms, "modBC", "3")
            _sub(icms, "vBC", _fmt(t.icms_base))
            _sub(icms, "pICMS", _fmt(t.icms_rate, 4))
            _sub(icms, "vICMS", _fmt(t.icms_value))

        if t.pis_cst == "01":
            pis = _sub(_sub(imposto, "PIS"), "PISAliq")
        else:
            pis = _sub(_sub(imposto, "PIS"), "PISOutr")
        _sub(pis, "CST", t.pis_cst)
        _sub(pis, "vBC", _fmt(t.icms_base if t.pis_cst == "01" else Decimal("0")))
        _sub(pis, "pPIS", _fmt(t.pis_rate, 4))
        _sub(pis, "vPIS", _fmt(t.pis_value))

        if t.cofins_cst == "01":
            cofins = _sub(_sub(imposto, "COFINS"), "COFINSAliq")
        else:
            cofins = _sub(_sub(imposto, "COFINS"), "COFINSOutr")
        _sub(cofins, "CST", t.cofins_cst)
        _sub(cofins, "vBC", _fmt(t.icms_base if t.cofins_cst == "01" else Decimal("0")))
        _sub(cofins, "pCOFINS", _fmt(t.cofins_rate, 4))
        _sub(cofins, "vCOFINS", _fmt(t.cofins_value))


def _render_totals(inf: etree._Element, totals: TotalsBlock) -> None:
    tot = _sub(_sub(inf, "total"), "ICMSTot")
    zero = "0.00"
    _sub(tot, "vBC", _fmt(totals.v_bc))
    _sub(tot, "vICMS", _fmt(totals.v_icms))
    for tag in ("vICMSDeson", "vFCP", "vBCST", "vST", "vFCPST", "vFCPSTRet"):
        _sub(tot, tag, zero)
    _sub(tot, "vProd", _fmt(totals.v_prod))
    _sub(tot, "vFrete", zero)
    _sub(tot, "vSeg", zero)
    _sub(tot, "vDesc", _fmt(totals.v_desc))
    for tag in ("vII", "vIPI", "vIPIDevol"):
        _sub(tot, tag, zero)
    _sub(tot, "vPIS", _fmt(totals.v_pis))
    _sub(tot, "vCOFINS", _fmt(totals.v_cofins))
    _sub(tot, "vOutro", zero)
    _sub(tot, "vNF", _fmt(totals.v_nf))


def nfce_qrcode(access_key: str, env: str, csc_id: str, csc_token: str, base_url: str) -> str:
    """Build the NFC-e QR code URL (version 2, online emission).

    hash = SHA-1 of ``chave|2|tpAmb|cIdToken`` concatenated with the CSC.
    """
    params = f"{access_key}|2|{TP_AMB[env]}|{int(csc_id)}"
    digest = hashlib.sha1((params + csc_token).encode()).hexdigest().upper()
    return f"{base_url}?p={params}|{digest}"


def render_xml(
    payload: NFePayload,
    *,
    number: int,
    series: int,
    env: str,
    emitted_at: datetime,
    numeric_code: str,
) -> tuple[etree._Element, str]:
    """Render the unsigned ``<NFe>`` element; returns (element, access_key).

    Sandbox documents are tagged in the recipient name and, for NFC-e, in the
    first item description.
    """
    issuer = payload.issuer
    sandbox = env == "homologacao"
    access_key = build_access_key(
        uf=issuer.uf,
        emitted_at=emitted_at,
        cnpj=issuer.cnpj,
        modelo=payload.modelo,
        serie=series,
        numero=number,
        numeric_code=numeric_code,
    )

    nfe = etree.Element(f"{{{NFE_NS}}}NFe", nsmap=NSMAP)  # type: ignore[arg-type]  # lxml stubs don't model None key for default ns
    inf = _sub(nfe, "infNFe")
    inf.set("versao", "4.00")
    inf.set("Id", f"NFe{access_key}")

    ide = _sub(inf, "ide")
    _sub(ide, "cUF", CODIGO_UF[issuer.uf.upper()])
    _sub(ide, "cNF", numeric_code)
    _sub(ide, "natOp", "VENDA")
    _sub(ide, "mod", payload.modelo)
    _sub(ide, "serie", str(series))
    _sub(ide, "nNF", str(number))
    _sub(ide, "dhEmi", emitted_at.isoformat(timespec="seconds"))
    _sub(ide, "tpNF", "1")
    _sub(ide, "idDest", "1")
    _sub(ide, "cMunFG", issuer.cod_municipio)
    _sub(ide, "tpImp", "4" if payload.doc_type == NFCE else "1")
    _sub(ide, "tpEmis", "1")
    _sub(ide, "cDV", access_key[-1])
    _sub(ide, "tpAmb", TP_AMB[env])
    _sub(ide, "finNFe", "1")
    _sub(ide, "indFinal", "1")
    _sub(ide, "indPres", "1")
    _sub(ide, "procEmi", "0")
    _sub(ide, "verProc", "emissor-nfe")

    emit = _sub(inf, "emit")
    _sub(emit, "CNPJ", issuer.cnpj)
    _sub(emit, "xNome", issuer.razao_social[:60])
    _sub(emit, "xFant", issuer.nome_fantasia[:60])
    ender = _sub(emit, "enderEmit")
    _sub(ender, "xLgr", issuer.logradouro[:60])
    _sub(ender, "nro", issuer.numero[:60])
    _sub(ender, "xBairro", issuer.bairro[:60])
    _sub(ender, "cMun", issuer.cod_municipio)
    _sub(ender, "xMun", issuer.municipio[:60])
    _sub(ender, "UF", issuer.uf)
    _sub(ender, "CEP", issuer.cep)
    _sub(ender, "cPais", "1058")
    _sub(ender, "xPais", "BRASIL")
    if issuer.telefone:
        _sub(ender, "fone", issuer.telefone)
    _sub(emit, "IE", issuer.inscricao_estadual)
    _sub(emit, "CRT", issuer.crt)

    customer = payload.customer
    if customer is not None:
        dest = _sub(inf, "dest")
        _sub(dest, "CNPJ" if customer.is_company else "CPF", customer.documento)
        _sub(dest, "xNome", SANDBOX_RECIPIENT if sandbox else customer.nome[:60])
        if customer.has_address:
            ender_dest = _sub(dest, "enderDest")
            _sub(ender_dest, "xLgr", (customer.logradouro or "")[:60])
            _sub(ender_dest, "nro", customer.numero or "S/N")
            _sub(ender_dest, "xBairro", (customer.bairro or "")[:60])
            _sub(ender_dest, "cMun", customer.cod_municipio or "")
            _sub(ender_dest, "xMun", (customer.municipio or "")[:60])
            _sub(ender_dest, "UF", customer.uf or "")
            if customer.cep:
                _sub(ender_dest, "CEP", customer.cep)
            _sub(ender_dest, "cPais", "1058")
            _sub(ender_dest, "xPais", "BRASIL")
        _sub(dest, "indIEDest", "9")
        if customer.email:
            _sub(dest, "email", customer.email[:60])

    _render_items(inf, payload, sandbox)
    _render_totals(inf, payload.totals)

    transp = _sub(inf, "transp")
    _sub(transp, "modFrete", "9")

    det_pag = _sub(_sub(inf, "pag"), "detPag")
    _sub(det_pag, "tPag", payload.payment.t_pag)
    _sub(det_pag, "vPag", _fmt(payload.payment.valor))

    if sandbox:
        _sub(_sub(inf, "infAdic"), "infCpl", SANDBOX_RECIPIENT)

    if payload.doc_type == NFCE:
        supl = _sub(nfe, "infNFeSupl")
        _sub(
            supl,
            "qrCode",
            nfce_qrcode(access_key, env, issuer.csc_id, issuer.csc_token, issuer.nfce_url_qrcode),
        )
        _sub(supl, "urlChave", issuer.nfce_url_chave)

    return nfe, access_key
