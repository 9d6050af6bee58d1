"""
Testes da assinatura XML-DSig (RSA-SHA1, C14N, enveloped)
"""
import base64
import hashlib

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from lxml import etree
from signxml import SignatureConfiguration, XMLVerifier
from signxml.algorithms import DigestAlgorithm, SignatureMethod

from conftest import CNPJ, make_certificate
from nfe_server.core.exceptions import SignatureError
from nfe_server.services.builder import DocumentBuilder
from nfe_server.services.constants import NFE_NAMESPACE, XMLDSIG_NAMESPACE, Environment
from nfe_server.services.events import build_cancellation_event
from nfe_server.services.signature import SignatureService

DS = {"ds": XMLDSIG_NAMESPACE}


def _b64(text):
    return base64.b64decode("".join(text.split()))


@pytest.fixture
def signer():
    return SignatureService()


@pytest.fixture
def built(order, company):
    return DocumentBuilder().build(order, company.to_issuer())


def _sign(signer, xml, bundle, **kwargs):
    return signer.sign(xml, bundle.private_key_pem, bundle.certificate_pem, **kwargs)


def test_signature_is_enveloped_in_nfe(signer, built, bundle):
    root = etree.fromstring(_sign(signer, built.xml, bundle).encode())

    signatures = root.findall(".//ds:Signature", DS)
    assert len(signatures) == 1
    assert signatures[0].getparent() is root
    assert etree.QName(root).localname == "NFe"


def test_signature_algorithms_and_reference(signer, built, bundle):
    root = etree.fromstring(_sign(signer, built.xml, bundle).encode())
    signed_info = root.find(".//ds:SignedInfo", DS)

    assert signed_info.find("ds:SignatureMethod", DS).get("Algorithm") == \
        "http://www.w3.org/2000/09/xmldsig#rsa-sha1"
    assert signed_info.find("ds:CanonicalizationMethod", DS).get("Algorithm") == \
        "http://www.w3.org/TR/2001/REC-xml-c14n-20010315"
    assert signed_info.find("ds:Reference", DS).get("URI") == f"#NFe{built.access_key}"
    assert root.find(".//ds:KeyInfo/ds:X509Data/ds:X509Certificate", DS) is not None


def test_digest_matches_canonical_inf_nfe(signer, built, bundle):
    root = etree.fromstring(_sign(signer, built.xml, bundle).encode())
    inf = root.find("{%s}infNFe" % NFE_NAMESPACE)

    expected = hashlib.sha1(etree.tostring(inf, method="c14n")).digest()
    digest = _b64(root.findtext(".//ds:Reference/ds:DigestValue", namespaces=DS))

    assert digest == expected


def test_signature_value_verifies_with_certificate(signer, built, bundle):
    root = etree.fromstring(_sign(signer, built.xml, bundle).encode())
    signed_info = root.find(".//ds:SignedInfo", DS)
    value = _b64(root.findtext(".//ds:SignatureValue", namespaces=DS))

    bundle.certificate.public_key().verify(
        value,
        etree.tostring(signed_info, method="c14n"),
        padding.PKCS1v15(),
        hashes.SHA1(),
    )


def test_already_signed_document(signer, built, bundle):
    signed = _sign(signer, built.xml, bundle)
    with pytest.raises(SignatureError):
        _sign(signer, signed, bundle)


def test_target_without_id(signer, built, bundle):
    xml = built.xml.replace(f' Id="NFe{built.access_key}"', "")
    with pytest.raises(SignatureError):
        _sign(signer, xml, bundle)


def test_malformed_xml(signer, bundle):
    with pytest.raises(SignatureError):
        _sign(signer, "<NFe><infNFe>", bundle)


def test_invalid_key(signer, built, bundle):
    with pytest.raises(SignatureError):
        signer.sign(built.xml, b"chave invalida", bundle.certificate_pem)


def test_sign_event(signer, built, bundle):
    event = build_cancellation_event(
        built.access_key, "142240000000001", "Pedido cancelado pelo cliente", CNPJ, Environment.HOMOLOGATION,
    )
    root = etree.fromstring(_sign(signer, event, bundle, node_tag="infEvento").encode())

    reference = root.find(".//ds:Reference", DS).get("URI")
    assert reference == f"#ID110111{built.access_key}01"
    assert root.find("ds:Signature", DS).getparent() is root


def test_signature_without_namespace_prefix(signer, built, bundle):
    signed = _sign(signer, built.xml, bundle)

    assert f'<Signature xmlns="{XMLDSIG_NAMESPACE}">' in signed
    assert "ds:" not in signed


def test_signed_document_passes_xml_verifier(signer, built, bundle):
    signed = _sign(signer, built.xml, bundle)

    result = XMLVerifier().verify(
        signed.encode(),
        x509_cert=bundle.certificate_pem.decode(),
        expect_config=SignatureConfiguration(
            signature_methods=frozenset({SignatureMethod.RSA_SHA1}),
            digest_algorithms=frozenset({DigestAlgorithm.SHA1}),
        ),
    )

    assert etree.QName(result.signed_xml).localname == "infNFe"


def test_signed_event_passes_verify(signer, built, bundle):
    event = build_cancellation_event(
        built.access_key, "142240000000001", "Pedido cancelado pelo cliente", CNPJ, Environment.HOMOLOGATION,
    )
    signed = _sign(signer, event, bundle, node_tag="infEvento")

    signer.verify(signed, bundle.certificate_pem)


def test_verify_detects_tampering(signer, built, bundle):
    signed = _sign(signer, built.xml, bundle)
    tampered = signed.replace("<xNome>EMPRESA TESTE LTDA</xNome>", "<xNome>OUTRA EMPRESA LTDA</xNome>", 1)
    assert tampered != signed

    with pytest.raises(SignatureError):
        signer.verify(tampered, bundle.certificate_pem)


def test_verify_with_other_certificate(signer, built, bundle):
    other_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    other = make_certificate(other_key)
    signed = _sign(signer, built.xml, bundle)

    with pytest.raises(SignatureError):
        signer.verify(signed, other)
