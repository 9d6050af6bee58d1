"""
Constantes do leiaute NF-e 4.00 e tabela de web services da SEFAZ

Documentacao SEFAZ: https://www.nfe.fazenda.gov.br/portal/principal.aspx
"""
import enum

# Namespace da NF-e 4.0
NFE_NAMESPACE = 'http://www.portalfiscal.inf.br/nfe'
NSMAP = {None: NFE_NAMESPACE}
XMLDSIG_NAMESPACE = 'http://www.w3.org/2000/09/xmldsig#'
NFE_VERSION = '4.00'
EVENT_VERSION = '1.00'

SOAP11_NAMESPACE = 'http://schemas.xmlsoap.org/soap/envelope/'
SOAP12_NAMESPACE = 'http://www.w3.org/2003/05/soap-envelope'
WSDL_NAMESPACE = 'http://www.portalfiscal.inf.br/nfe/wsdl/'

# Codigo UF IBGE
CODIGO_UF = {
    'AC': '12', 'AL': '27', 'AP': '16', 'AM': '13', 'BA': '29', 'CE': '23',
    'DF': '53', 'ES': '32', 'GO': '52', 'MA': '21', 'MT': '51', 'MS': '50',
    'MG': '31', 'PA': '15', 'PB': '25', 'PR': '41', 'PE': '26', 'PI': '22',
    'RJ': '33', 'RN': '24', 'RS': '43', 'RO': '11', 'RR': '14', 'SC': '42',
    'SP': '35', 'SE': '28', 'TO': '17'
}

# Estados atendidos pelo SVC-RS em contingencia; os demais usam SVC-AN
UF_SVC_RS = ['AM', 'BA', 'GO', 'MA', 'MS', 'MT', 'PA', 'PE', 'PR']

# cOrgao do Ambiente Nacional (eventos de manifestacao do destinatario)
CODIGO_AMBIENTE_NACIONAL = '91'


class Environment(str, enum.Enum):
    """tpAmb"""
    PRODUCTION = "1"
    HOMOLOGATION = "2"


class SendMode(str, enum.Enum):
    """Autorizador de destino do lote"""
    NORMAL = "NORMAL"
    SVC_AN = "SVC-AN"
    SVC_RS = "SVC-RS"

    @property
    def tp_emis(self) -> str:
        return TP_EMIS[self.value]

    @property
    def is_contingency(self) -> bool:
        return self is not SendMode.NORMAL


# tpEmis por modo de envio
TP_EMIS = {
    "NORMAL": "1",
    "SVC-AN": "6",
    "SVC-RS": "7",
}


def contingency_mode_for_uf(uf: str) -> SendMode:
    """Modo SVC designado para a UF do emitente"""
    return SendMode.SVC_RS if uf in UF_SVC_RS else SendMode.SVC_AN


class Service(str, enum.Enum):
    """Web services da NF-e 4.00: (nome WSDL, operacao)"""
    AUTORIZACAO = "NfeAutorizacao"
    RET_AUTORIZACAO = "NfeRetAutorizacao"
    CONSULTA_PROTOCOLO = "NfeConsultaProtocolo"
    STATUS_SERVICO = "NfeStatusServico"
    RECEPCAO_EVENTO = "RecepcaoEvento"
    INUTILIZACAO = "NfeInutilizacao"


SOAP_OPERATIONS = {
    Service.AUTORIZACAO: ("NFeAutorizacao4", "nfeAutorizacaoLote"),
    Service.RET_AUTORIZACAO: ("NFeRetAutorizacao4", "nfeRetAutorizacaoLote"),
    Service.CONSULTA_PROTOCOLO: ("NFeConsultaProtocolo4", "nfeConsultaNF"),
    Service.STATUS_SERVICO: ("NFeStatusServico4", "nfeStatusServicoNF"),
    Service.RECEPCAO_EVENTO: ("NFeRecepcaoEvento4", "nfeRecepcaoEvento"),
    Service.INUTILIZACAO: ("NFeInutilizacao4", "nfeInutilizacaoNF"),
}


# =====================================================
# URLS DOS WEB SERVICES (por autorizador e ambiente)
# =====================================================

SEFAZ_URLS = {
    'SVRS': {
        Environment.PRODUCTION: {
            'NfeAutorizacao': 'https://nfe.svrs.rs.gov.br/ws/NfeAutorizacao/NFeAutorizacao4.asmx',
            'NfeRetAutorizacao': 'https://nfe.svrs.rs.gov.br/ws/NfeRetAutorizacao/NFeRetAutorizacao4.asmx',
            'NfeConsultaProtocolo': 'https://nfe.svrs.rs.gov.br/ws/NfeConsulta/NfeConsulta4.asmx',
            'NfeStatusServico': 'https://nfe.svrs.rs.gov.br/ws/NfeStatusServico/NfeStatusServico4.asmx',
            'RecepcaoEvento': 'https://nfe.svrs.rs.gov.br/ws/recepcaoevento/recepcaoevento4.asmx',
            'NfeInutilizacao': 'https://nfe.svrs.rs.gov.br/ws/nfeinutilizacao/nfeinutilizacao4.asmx',
        },
        Environment.HOMOLOGATION: {
            'NfeAutorizacao': 'https://nfe-homologacao.svrs.rs.gov.br/ws/NfeAutorizacao/NFeAutorizacao4.asmx',
            'NfeRetAutorizacao': 'https://nfe-homologacao.svrs.rs.gov.br/ws/NfeRetAutorizacao/NFeRetAutorizacao4.asmx',
            'NfeConsultaProtocolo': 'https://nfe-homologacao.svrs.rs.gov.br/ws/NfeConsulta/NfeConsulta4.asmx',
            'NfeStatusServico': 'https://nfe-homologacao.svrs.rs.gov.br/ws/NfeStatusServico/NfeStatusServico4.asmx',
            'RecepcaoEvento': 'https://nfe-homologacao.svrs.rs.gov.br/ws/recepcaoevento/recepcaoevento4.asmx',
            'NfeInutilizacao': 'https://nfe-homologacao.svrs.rs.gov.br/ws/nfeinutilizacao/nfeinutilizacao4.asmx',
        },
    },
    'SVC-AN': {
        Environment.PRODUCTION: {
            'NfeAutorizacao': 'https://www.svc.fazenda.gov.br/NFeAutorizacao4/NFeAutorizacao4.asmx',
            'NfeRetAutorizacao': 'https://www.svc.fazenda.gov.br/NFeRetAutorizacao4/NFeRetAutorizacao4.asmx',
            'NfeConsultaProtocolo': 'https://www.svc.fazenda.gov.br/NFeConsultaProtocolo4/NFeConsultaProtocolo4.asmx',
            'NfeStatusServico': 'https://www.svc.fazenda.gov.br/NFeStatusServico4/NFeStatusServico4.asmx',
            'RecepcaoEvento': 'https://www.svc.fazenda.gov.br/NFeRecepcaoEvento4/NFeRecepcaoEvento4.asmx',
        },
        Environment.HOMOLOGATION: {
            'NfeAutorizacao': 'https://hom.svc.fazenda.gov.br/NFeAutorizacao4/NFeAutorizacao4.asmx',
            'NfeRetAutorizacao': 'https://hom.svc.fazenda.gov.br/NFeRetAutorizacao4/NFeRetAutorizacao4.asmx',
            'NfeConsultaProtocolo': 'https://hom.svc.fazenda.gov.br/NFeConsultaProtocolo4/NFeConsultaProtocolo4.asmx',
            'NfeStatusServico': 'https://hom.svc.fazenda.gov.br/NFeStatusServico4/NFeStatusServico4.asmx',
            'RecepcaoEvento': 'https://hom.svc.fazenda.gov.br/NFeRecepcaoEvento4/NFeRecepcaoEvento4.asmx',
        },
    },
    'SVC-RS': {
        Environment.PRODUCTION: {
            'NfeAutorizacao': 'https://nfe.svrs.rs.gov.br/ws/NfeAutorizacao/NFeAutorizacao4.asmx',
            'NfeRetAutorizacao': 'https://nfe.svrs.rs.gov.br/ws/NfeRetAutorizacao/NFeRetAutorizacao4.asmx',
            'NfeConsultaProtocolo': 'https://nfe.svrs.rs.gov.br/ws/NfeConsulta/NfeConsulta4.asmx',
            'NfeStatusServico': 'https://nfe.svrs.rs.gov.br/ws/NfeStatusServico/NfeStatusServico4.asmx',
            'RecepcaoEvento': 'https://nfe.svrs.rs.gov.br/ws/recepcaoevento/recepcaoevento4.asmx',
        },
        Environment.HOMOLOGATION: {
            'NfeAutorizacao': 'https://nfe-homologacao.svrs.rs.gov.br/ws/NfeAutorizacao/NFeAutorizacao4.asmx',
            'NfeRetAutorizacao': 'https://nfe-homologacao.svrs.rs.gov.br/ws/NfeRetAutorizacao/NFeRetAutorizacao4.asmx',
            'NfeConsultaProtocolo': 'https://nfe-homologacao.svrs.rs.gov.br/ws/NfeConsulta/NfeConsulta4.asmx',
            'NfeStatusServico': 'https://nfe-homologacao.svrs.rs.gov.br/ws/NfeStatusServico/NfeStatusServico4.asmx',
            'RecepcaoEvento': 'https://nfe-homologacao.svrs.rs.gov.br/ws/recepcaoevento/recepcaoevento4.asmx',
        },
    },
    # Ambiente Nacional: manifestacao do destinatario (cOrgao 91)
    'AN': {
        Environment.PRODUCTION: {
            'RecepcaoEvento': 'https://www.nfe.fazenda.gov.br/NFeRecepcaoEvento4/NFeRecepcaoEvento4.asmx',
        },
        Environment.HOMOLOGATION: {
            'RecepcaoEvento': 'https://hom1.nfe.fazenda.gov.br/NFeRecepcaoEvento4/NFeRecepcaoEvento4.asmx',
        },
    },
}


# =====================================================
# CODIGOS DE STATUS (cStat)
# =====================================================

CSTAT_AUTORIZADO = 100
CSTAT_CANCELADO = 101
CSTAT_INUTILIZADO = 102
CSTAT_LOTE_RECEBIDO = 103
CSTAT_LOTE_PROCESSADO = 104
CSTAT_LOTE_EM_PROCESSAMENTO = 105
CSTAT_SERVICO_EM_OPERACAO = 107
CSTAT_EVENTO_LOTE_PROCESSADO = 128
CSTAT_AUTORIZADO_FORA_PRAZO = 150

# Servico paralisado: tratado como falha de transporte (contingencia)
CSTAT_SERVICO_PARALISADO = {108, 109}

CSTAT_AUTORIZACAO_OK = {CSTAT_AUTORIZADO, CSTAT_AUTORIZADO_FORA_PRAZO}
CSTAT_DENEGADO = {110, 301, 302, 303}

# 135 = Evento registrado e vinculado a NF-e
# 136 = Evento registrado, mas nao vinculado a NF-e
# 155 = Cancelamento homologado fora de prazo
CSTAT_EVENTO_OK = {135, 136, 155}


# =====================================================
# EVENTOS
# =====================================================

EVENTO_CANCELAMENTO = '110111'
EVENTO_CARTA_CORRECAO = '110110'
EVENTO_CONFIRMACAO_OPERACAO = '210200'
EVENTO_CIENCIA_OPERACAO = '210210'
EVENTO_DESCONHECIMENTO_OPERACAO = '210220'
EVENTO_OPERACAO_NAO_REALIZADA = '210240'

DESCRICAO_EVENTOS = {
    EVENTO_CANCELAMENTO: 'Cancelamento',
    EVENTO_CARTA_CORRECAO: 'Carta de Correcao',
    EVENTO_CONFIRMACAO_OPERACAO: 'Confirmacao da Operacao',
    EVENTO_CIENCIA_OPERACAO: 'Ciencia da Operacao',
    EVENTO_DESCONHECIMENTO_OPERACAO: 'Desconhecimento da Operacao',
    EVENTO_OPERACAO_NAO_REALIZADA: 'Operacao nao Realizada',
}

EVENTOS_MANIFESTACAO = (
    EVENTO_CONFIRMACAO_OPERACAO,
    EVENTO_CIENCIA_OPERACAO,
    EVENTO_DESCONHECIMENTO_OPERACAO,
    EVENTO_OPERACAO_NAO_REALIZADA,
)

JUSTIFICATIVA_MIN = 15
JUSTIFICATIVA_MAX = 255
CORRECAO_MIN = 15
CORRECAO_MAX = 1000
CORRECAO_SEQUENCIA_MAX = 20

CONDICAO_USO_CCE = (
    "A Carta de Correcao e disciplinada pelo paragrafo 1o-A do art. 7o "
    "do Convenio S/N, de 15 de dezembro de 1970 e pode ser utilizada para "
    "regularizacao de erro ocorrido na emissao de documento fiscal, desde que "
    "o erro nao esteja relacionado com: I - as variaveis que determinam o valor "
    "do imposto tais como: base de calculo, aliquota, diferenca de preco, "
    "quantidade, valor da operacao ou da prestacao; II - a correcao de dados "
    "cadastrais que implique mudanca do remetente ou do destinatario; "
    "III - a data de emissao ou de saida."
)
