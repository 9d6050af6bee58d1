"""
Validacao do XML da NF-e antes da assinatura

Camadas:
1. Estrutural: raiz NFe, namespace, versao 4.00, blocos obrigatorios
2. Campos: CNPJ/nome do emitente, CPF/CNPJ/nome do destinatario, chave
3. XSD (opcional): so roda se os schemas oficiais estiverem no disco.
   Ausencia dos arquivos gera aviso, nunca erro.
"""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from lxml import etree

from nfe_server.core.config import settings
from nfe_server.services.constants import NFE_NAMESPACE, NFE_VERSION, XMLDSIG_NAMESPACE
from nfe_server.utils.access_key import validate_access_key

logger = logging.getLogger(__name__)

XSD_FILES = (
    'nfe_v4.00.xsd',
    'leiauteNFe_v4.00.xsd',
    'tiposBasico_v4.00.xsd',
    'DFeTiposBasicos_v1.00.xsd',
    'xmldsig-core-schema_v1.01.xsd',
)

REQUIRED_BLOCKS = (
    ('ide', 'Identificacao (ide)'),
    ('emit', 'Emitente (emit)'),
    ('dest', 'Destinatario (dest)'),
    ('total', 'Totais (total)'),
    ('transp', 'Transporte (transp)'),
    ('pag', 'Pagamento (pag)'),
)


@dataclass
class ValidationResult:
    valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def add_error(self, message: str):
        self.errors.append(message)
        self.valid = False

    def add_warning(self, message: str):
        self.warnings.append(message)


def _tag(name: str) -> str:
    return '{%s}%s' % (NFE_NAMESPACE, name)


def _text(parent, name: str) -> str:
    if parent is None:
        return ''
    return (parent.findtext(_tag(name)) or '').strip()


class StructuralValidator:
    """Valida o XML da NF-e sem nenhuma chamada de rede"""

    def __init__(self, xsd_dir: Optional[str] = None):
        self.xsd_dir = Path(xsd_dir or settings.NFE_XSD_DIR)
        self._schema = None
        self._schema_error = None
        self._schema_loaded = False

    def validate(self, xml: str) -> ValidationResult:
        result = ValidationResult()

        try:
            root = etree.fromstring(xml.encode('utf-8') if isinstance(xml, str) else xml)
        except etree.XMLSyntaxError as e:
            result.add_error(f"XML mal formado: {e}")
            return result

        infNFe = self._validate_structure(root, result)
        if infNFe is not None:
            self._validate_issuer(infNFe.find(_tag('emit')), result)
            self._validate_recipient(infNFe.find(_tag('dest')), result)
            self._validate_access_key(infNFe, result)

        if result.valid:
            self._validate_schema(root, result)

        for warning in result.warnings:
            logger.warning(f"[NFE-VALIDATOR] {warning}")
        if not result.valid:
            logger.info(f"[NFE-VALIDATOR] XML invalido: {len(result.errors)} erro(s)")

        return result

    # -------------------------------------------------
    # Camada 1: estrutura
    # -------------------------------------------------

    def _validate_structure(self, root, result: ValidationResult):
        if etree.QName(root).localname != 'NFe':
            result.add_error(f"Elemento raiz deve ser NFe (encontrado: {etree.QName(root).localname})")
            return None

        if etree.QName(root).namespace != NFE_NAMESPACE:
            result.add_error(f"Namespace invalido: esperado {NFE_NAMESPACE}")

        infNFe = root.find(_tag('infNFe'))
        if infNFe is None:
            result.add_error("Elemento infNFe nao encontrado")
            return None

        versao = infNFe.get('versao')
        if versao != NFE_VERSION:
            result.add_error(f"Versao do leiaute invalida: esperado {NFE_VERSION}, encontrado {versao}")

        for tag, label in REQUIRED_BLOCKS:
            if infNFe.find(_tag(tag)) is None:
                result.add_error(f"Bloco obrigatorio ausente: {label}")

        if not infNFe.findall(_tag('det')):
            result.add_error("NF-e deve ter pelo menos um item (det)")

        return infNFe

    # -------------------------------------------------
    # Camada 2: campos
    # -------------------------------------------------

    def _validate_issuer(self, emit, result: ValidationResult):
        if emit is None:
            return

        cnpj = _text(emit, 'CNPJ')
        if not cnpj:
            result.add_error("CNPJ do emitente e obrigatorio")
        elif len(cnpj) != 14 or not cnpj.isdigit():
            result.add_error(f"CNPJ do emitente deve ter 14 digitos (informado: {cnpj})")

        if not _text(emit, 'xNome'):
            result.add_error("Razao social do emitente (xNome) e obrigatoria")
        if emit.find(_tag('enderEmit')) is None:
            result.add_error("Endereco do emitente (enderEmit) e obrigatorio")
        if not _text(emit, 'IE'):
            result.add_error("Inscricao estadual do emitente (IE) e obrigatoria")

    def _validate_recipient(self, dest, result: ValidationResult):
        if dest is None:
            return

        cnpj = _text(dest, 'CNPJ')
        cpf = _text(dest, 'CPF')
        if not cnpj and not cpf:
            result.add_error("Destinatario deve ter CNPJ ou CPF")
        elif cnpj and (len(cnpj) != 14 or not cnpj.isdigit()):
            result.add_error(f"CNPJ do destinatario deve ter 14 digitos (informado: {cnpj})")
        elif cpf and (len(cpf) != 11 or not cpf.isdigit()):
            result.add_error(f"CPF do destinatario deve ter 11 digitos (informado: {cpf})")

        if not _text(dest, 'xNome'):
            result.add_error("Nome do destinatario (xNome) e obrigatorio")

    def _validate_access_key(self, infNFe, result: ValidationResult):
        node_id = infNFe.get('Id') or ''
        if not node_id.startswith('NFe'):
            result.add_error("Atributo Id do infNFe deve ser 'NFe' + chave de acesso")
            return

        key = node_id[3:]
        check = validate_access_key(key)
        if not check.valid:
            result.add_error(f"Chave de acesso invalida: {check.error}")
            return

        cdv = _text(infNFe.find(_tag('ide')), 'cDV')
        if cdv and cdv != key[-1]:
            result.add_error(f"cDV ({cdv}) difere do digito da chave ({key[-1]})")

    # -------------------------------------------------
    # Camada 3: XSD
    # -------------------------------------------------

    def _load_schema(self):
        if self._schema_loaded:
            return self._schema

        self._schema_loaded = True
        missing = [name for name in XSD_FILES if not (self.xsd_dir / name).exists()]
        if missing:
            self._schema_error = f"Schemas XSD nao encontrados em {self.xsd_dir}: {', '.join(missing)}"
            return None

        try:
            self._schema = etree.XMLSchema(etree.parse(str(self.xsd_dir / XSD_FILES[0])))
        except (etree.XMLSchemaParseError, etree.XMLSyntaxError, OSError) as e:
            self._schema_error = f"Falha ao carregar XSD: {e}"
        return self._schema

    def _validate_schema(self, root, result: ValidationResult):
        schema = self._load_schema()
        if schema is None:
            result.add_warning(f"{self._schema_error}. Validacao XSD nao executada.")
            return

        signed = root.find('{%s}Signature' % XMLDSIG_NAMESPACE) is not None
        if schema.validate(root):
            return

        for error in schema.error_log:
            # Antes da assinatura o unico erro aceitavel e a falta do Signature
            if not signed and '%s}Signature' % XMLDSIG_NAMESPACE in error.message:
                continue
            result.add_error(f"XSD linha {error.line}: {error.message}")

        if not signed:
            result.add_warning("Documento ainda nao assinado: elemento Signature ignorado na validacao XSD")
