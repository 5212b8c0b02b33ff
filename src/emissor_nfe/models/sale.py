from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal


def _dec(value: object, default: str = "0") -> Decimal:
    if value is None or value == "":
        return Decimal(default)
    return Decimal(str(value))


def _digits(value: object) -> str:
    return "".join(ch for ch in str(value or "") if ch.isdigit())


@dataclass(frozen=True)
class Product:
    """Product snapshot as referenced by a sale line item."""

    codigo: str
    nome: str
    ncm: str
    unidade_comercial: str
    cfop: str = "5102"
    cest: str | None = None
    origem: str = "0"
    csosn: str | None = None
    ean: str = "SEM GTIN"

    @classmethod
    def from_dict(cls, d: dict) -> Product:
        return cls(
            codigo=str(d.get("codigo") or d.get("id") or ""),
            nome=d.get("nome", ""),
            ncm=_digits(d.get("ncm")),
            unidade_comercial=(d.get("unidade_comercial") or d.get("unidade") or "").strip(),
            cfop=_digits(d.get("cfop_padrao") or d.get("cfop") or "5102"),
            cest=_digits(d.get("cest")) or None,
            origem=str(d.get("origem_mercadoria", "0")),
            csosn=str(d["csosn"]) if d.get("csosn") else None,
            ean=d.get("ean") or "SEM GTIN",
        )


@dataclass(frozen=True)
class SaleItem:
    produto: Product
    quantidade: Decimal
    preco_unitario: Decimal
    subtotal: Decimal

    @classmethod
    def from_dict(cls, d: dict) -> SaleItem:
        quantidade = _dec(d.get("quantidade"), "1")
        preco = _dec(d.get("preco_unitario"))
        subtotal = d.get("subtotal")
        return cls(
            produto=Product.from_dict(d.get("produto") or {}),
            quantidade=quantidade,
            preco_unitario=preco,
            subtotal=_dec(subtotal) if subtotal is not None else (quantidade * preco).quantize(Decimal("0.01")),
        )


@dataclass(frozen=True)
class Customer:
    """Recipient (destinatário); CPF or CNPJ, digits only."""

    documento: str
    nome: str
    email: str | None = None
    logradouro: str | None = None
    numero: str | None = None
    bairro: str | None = None
    cod_municipio: str | None = None
    municipio: str | None = None
    uf: str | None = None
    cep: str | None = None

    @property
    def is_company(self) -> bool:
        return len(self.documento) == 14

    @property
    def has_address(self) -> bool:
        return bool(self.logradouro and self.cod_municipio and self.uf)

    @classmethod
    def from_dict(cls, d: dict) -> Customer:
        endereco = d.get("endereco") or {}
        return cls(
            documento=_digits(d.get("cpf_cnpj") or d.get("documento")),
            nome=d.get("nome", ""),
            email=d.get("email"),
            logradouro=endereco.get("logradouro"),
            numero=str(endereco["numero"]) if endereco.get("numero") else None,
            bairro=endereco.get("bairro"),
            cod_municipio=str(endereco["cod_municipio"]) if endereco.get("cod_municipio") else None,
            municipio=endereco.get("municipio"),
            uf=endereco.get("uf"),
            cep=_digits(endereco.get("cep")) or None,
        )


@dataclass(frozen=True)
class Sale:
    """Finalized sale (venda); immutable once exported for emission."""

    id: str
    numero: int
    itens: tuple[SaleItem, ...]
    valor_total: Decimal
    desconto: Decimal
    valor_final: Decimal
    forma_pagamento: str
    cliente: Customer | None = None

    @classmethod
    def from_dict(cls, d: dict) -> Sale:
        itens = tuple(SaleItem.from_dict(i) for i in d.get("itens") or [])
        valor_total = d.get("valor_total")
        desconto = _dec(d.get("desconto"))
        total = _dec(valor_total) if valor_total is not None else sum((i.subtotal for i in itens), Decimal("0"))
        valor_final = d.get("valor_final")
        cliente = d.get("cliente")
        return cls(
            id=str(d["id"]),
            numero=int(d.get("numero", 0)),
            itens=itens,
            valor_total=total,
            desconto=desconto,
            valor_final=_dec(valor_final) if valor_final is not None else total - desconto,
            forma_pagamento=d.get("forma_pagamento", "dinheiro"),
            cliente=Customer.from_dict(cliente) if cliente else None,
        )
