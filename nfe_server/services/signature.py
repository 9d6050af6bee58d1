"""
Assinatura digital XML (XML-DSig enveloped) da NF-e e dos eventos

Padrao exigido pela SEFAZ: RSA-SHA1, digest SHA1, C14N 1.0, referencia
ao atributo Id do no assinado e X509Certificate no KeyInfo. A SEFAZ
recusa prefixo de namespace na assinatura, entao o elemento Signature
e montado aqui com xmlns padrao e conferido com o XMLVerifier do signxml.
"""
import base64
import hashlib
import logging
from typing import Optional, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from lxml import etree
from signxml import XMLVerifier, SignatureConfiguration
from signxml.algorithms import SignatureMethod, DigestAlgorithm
from signxml.exceptions import SignXMLException

from nfe_server.core.exceptions import SignatureError
from nfe_server.services.constants import XMLDSIG_NAMESPACE

logger = logging.getLogger(__name__)

C14N_ALGORITHM = 'http://www.w3.org/TR/2001/REC-xml-c14n-20010315'
SIGNATURE_ALGORITHM = XMLDSIG_NAMESPACE + 'rsa-sha1'
DIGEST_ALGORITHM = XMLDSIG_NAMESPACE + 'sha1'
ENVELOPED_TRANSFORM = XMLDSIG_NAMESPACE + 'enveloped-signature'

# No assinado por tipo de documento
SIGNED_NODES = ('infNFe', 'infEvento', 'infInut')

# signxml recusa SHA1 por padrao; o leiaute 4.00 ainda exige
VERIFY_CONFIG = SignatureConfiguration(
    signature_methods=frozenset({SignatureMethod.RSA_SHA1}),
    digest_algorithms=frozenset({DigestAlgorithm.SHA1}),
)


def _ds(tag: str) -> str:
    return '{%s}%s' % (XMLDSIG_NAMESPACE, tag)


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode('ascii')


class SignatureService:
    """Assina XML com o certificado A1 da empresa"""

    def sign(
        self,
        xml: Union[str, bytes],
        private_key_pem: bytes,
        certificate_pem: bytes,
        node_tag: Optional[str] = None,
    ) -> str:
        """
        Assina digitalmente o XML.

        Args:
            xml: Documento sem assinatura (NFe, evento ou inutNFe)
            private_key_pem: Chave privada em PEM
            certificate_pem: Certificado em PEM
            node_tag: No a ser referenciado (padrao: primeiro de SIGNED_NODES)

        Returns:
            XML assinado, sem declaracao e sem formatacao

        Raises:
            SignatureError: XML, chave ou certificado invalidos
        """
        try:
            parser = etree.XMLParser(remove_blank_text=True)
            root = etree.fromstring(xml.encode('utf-8') if isinstance(xml, str) else xml, parser)
        except etree.XMLSyntaxError as e:
            raise SignatureError(f"XML invalido para assinatura: {e}") from e

        if root.find(_ds('Signature')) is not None:
            raise SignatureError("Documento ja possui assinatura")

        target = self._find_target(root, node_tag)
        node_id = target.get('Id')
        if not node_id:
            raise SignatureError(f"Elemento {etree.QName(target).localname} sem atributo Id")

        private_key, certificate = self._load_keys(private_key_pem, certificate_pem)

        # O no assinado nao contem a Signature: o digest vem antes de anexa-la
        digest = hashlib.sha1(etree.tostring(target, method='c14n')).digest()

        signature = etree.SubElement(root, _ds('Signature'), nsmap={None: XMLDSIG_NAMESPACE})
        signed_info = etree.SubElement(signature, _ds('SignedInfo'))
        etree.SubElement(signed_info, _ds('CanonicalizationMethod'), Algorithm=C14N_ALGORITHM)
        etree.SubElement(signed_info, _ds('SignatureMethod'), Algorithm=SIGNATURE_ALGORITHM)
        reference = etree.SubElement(signed_info, _ds('Reference'), URI=f"#{node_id}")
        transforms = etree.SubElement(reference, _ds('Transforms'))
        etree.SubElement(transforms, _ds('Transform'), Algorithm=ENVELOPED_TRANSFORM)
        etree.SubElement(transforms, _ds('Transform'), Algorithm=C14N_ALGORITHM)
        etree.SubElement(reference, _ds('DigestMethod'), Algorithm=DIGEST_ALGORITHM)
        etree.SubElement(reference, _ds('DigestValue')).text = _b64(digest)

        # SignedInfo canonizado ja no contexto final do documento
        signed_info_c14n = etree.tostring(signed_info, method='c14n')
        signature_value = private_key.sign(signed_info_c14n, padding.PKCS1v15(), hashes.SHA1())
        etree.SubElement(signature, _ds('SignatureValue')).text = _b64(signature_value)

        key_info = etree.SubElement(signature, _ds('KeyInfo'))
        x509_data = etree.SubElement(key_info, _ds('X509Data'))
        etree.SubElement(x509_data, _ds('X509Certificate')).text = _b64(
            certificate.public_bytes(serialization.Encoding.DER)
        )

        signed_xml = etree.tostring(root, encoding='unicode')

        signatures = etree.fromstring(signed_xml.encode('utf-8')).findall('.//' + _ds('Signature'))
        if len(signatures) != 1:
            raise SignatureError(f"Esperada uma assinatura, encontradas {len(signatures)}")

        self.verify(signed_xml, certificate)

        logger.debug(f"[NFE-SIGNATURE] Documento {node_id} assinado")
        return signed_xml

    def verify(self, xml: Union[str, bytes], certificate: Union[bytes, str, x509.Certificate]) -> None:
        """
        Confere digest e SignatureValue de um XML assinado.

        Raises:
            SignatureError: assinatura ausente, adulterada ou de outro certificado
        """
        if isinstance(certificate, bytes):
            certificate = certificate.decode()
        data = xml.encode('utf-8') if isinstance(xml, str) else xml

        try:
            XMLVerifier().verify(data, x509_cert=certificate, expect_config=VERIFY_CONFIG)
        except (SignXMLException, ValueError) as e:
            logger.error(f"[NFE-SIGNATURE] Assinatura nao confere: {e}")
            raise SignatureError(f"Assinatura invalida: {e}") from e

    @staticmethod
    def _load_keys(private_key_pem, certificate_pem):
        if isinstance(private_key_pem, str):
            private_key_pem = private_key_pem.encode()
        if isinstance(certificate_pem, str):
            certificate_pem = certificate_pem.encode()

        try:
            private_key = serialization.load_pem_private_key(private_key_pem, password=None)
            certificate = x509.load_pem_x509_certificate(certificate_pem)
        except (ValueError, TypeError) as e:
            logger.error(f"[NFE-SIGNATURE] Chave ou certificado invalidos: {e}")
            raise SignatureError(f"Falha ao carregar chave ou certificado: {e}") from e

        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise SignatureError("A assinatura da NF-e exige chave RSA")

        return private_key, certificate

    @staticmethod
    def _find_target(root, node_tag: Optional[str]):
        tags = (node_tag,) if node_tag else SIGNED_NODES
        for tag in tags:
            for element in root.iter():
                if isinstance(element.tag, str) and etree.QName(element).localname == tag:
                    return element
        raise SignatureError(f"No a ser assinado nao encontrado ({', '.join(tags)})")
