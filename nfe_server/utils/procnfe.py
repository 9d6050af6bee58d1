"""
nfeProc: NF-e assinada + protocolo de autorizacao

E o XML que deve ser guardado e entregue ao destinatario.
"""
from typing import Union

from lxml import etree

from nfe_server.core.exceptions import ValidationError
from nfe_server.services.constants import NFE_NAMESPACE, NSMAP, NFE_VERSION


def _parse(xml: Union[str, bytes], label: str):
    try:
        parser = etree.XMLParser(remove_blank_text=True)
        return etree.fromstring(xml.encode('utf-8') if isinstance(xml, str) else xml, parser)
    except etree.XMLSyntaxError as e:
        raise ValidationError(f"{label} invalido: {e}") from e


def merge_authorized(signed_xml: Union[str, bytes], protocol_xml: Union[str, bytes]) -> str:
    """
    Junta NFe e protNFe em nfeProc versao 4.00.

    Raises:
        ValidationError: XML ilegivel ou chave do protocolo diferente da nota
    """
    nfe = _parse(signed_xml, "XML da NF-e")
    prot = _parse(protocol_xml, "Protocolo")

    if etree.QName(nfe).localname != 'NFe':
        nfe = nfe.find('.//{%s}NFe' % NFE_NAMESPACE)
        if nfe is None:
            raise ValidationError("Elemento NFe nao encontrado no XML assinado")
    if etree.QName(prot).localname != 'protNFe':
        prot = prot.find('.//{%s}protNFe' % NFE_NAMESPACE)
        if prot is None:
            raise ValidationError("Elemento protNFe nao encontrado no protocolo")

    inf = nfe.find('{%s}infNFe' % NFE_NAMESPACE)
    key = (inf.get('Id') or '')[3:] if inf is not None else ''
    prot_key = prot.findtext('{%s}infProt/{%s}chNFe' % (NFE_NAMESPACE, NFE_NAMESPACE))
    if prot_key and key and prot_key != key:
        raise ValidationError(f"Protocolo pertence a outra chave ({prot_key})")

    proc = etree.Element('{%s}nfeProc' % NFE_NAMESPACE, nsmap=NSMAP)
    proc.set('versao', NFE_VERSION)
    proc.append(nfe)
    proc.append(prot)

    return etree.tostring(proc, encoding='unicode')
