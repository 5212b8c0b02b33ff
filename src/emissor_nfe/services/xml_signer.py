from __future__ import annotations

from lxml import etree
from signxml.algorithms import (
    DigestAlgorithm,
    SignatureConstructionMethod,
    SignatureMethod,
)
from signxml.signer import XMLSigner

from emissor_nfe.config import NFE_NS

C14N = "http://www.w3.org/TR/2001/REC-xml-c14n-20010315"


def sign_element(
    root: etree._Element,
    inf_tag: str,
    key_pem: bytes,
    cert_pem: bytes,
) -> etree._Element:
    """Sign *root* with an enveloped RSA-SHA256 signature over its ``inf_tag`` child.

    *inf_tag* is the local name of the element carrying the Id attribute
    (``infNFe``, ``infEvento``, ``infInut``).  Returns the signed root.
    """
    inf = root.find(f"{{{NFE_NS}}}{inf_tag}")
    if inf is None:
        inf = root.find(inf_tag)
    if inf is None:
        raise ValueError(f"{inf_tag} element not found")

    ref_id = inf.get("Id")
    if not ref_id:
        raise ValueError(f"{inf_tag} is missing Id attribute")

    signer = XMLSigner(
        method=SignatureConstructionMethod.enveloped,
        signature_algorithm=SignatureMethod.RSA_SHA256,
        digest_algorithm=DigestAlgorithm.SHA256,
        c14n_algorithm=C14N,
    )

    return signer.sign(
        root,
        key=key_pem,
        cert=cert_pem.decode(),
        reference_uri=f"#{ref_id}",
    )


def sign_nfe(nfe: etree._Element, key_pem: bytes, cert_pem: bytes) -> etree._Element:
    return sign_element(nfe, "infNFe", key_pem, cert_pem)
