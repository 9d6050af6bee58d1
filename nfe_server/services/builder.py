"""
Montagem do XML da NF-e 4.00 (modelo 55)

O builder e puro: recebe o pedido, o emitente e os parametros de emissao
e devolve o XML sem assinatura. Nao faz I/O.
"""
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from lxml import etree

from nfe_server.core.config import settings
from nfe_server.core.exceptions import ValidationError
from nfe_server.schemas.nfe import OrderData, Issuer, LineItem, Recipient, Address
from nfe_server.services.constants import (
    NFE_NAMESPACE,
    NSMAP,
    NFE_VERSION,
    CODIGO_UF,
    Environment,
    SendMode,
)
from nfe_server.utils.access_key import generate_access_key
from nfe_server.utils.formatting import (
    BRAZIL_TZ,
    brazil_now,
    format_datetime_tz,
    format_decimal,
    only_digits,
    quantize,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

# CST de ICMS sem destaque de imposto (grupo ICMS40)
ICMS_CST_SEM_DESTAQUE = ('40', '41', '50')


def _tag(name: str) -> str:
    return '{%s}%s' % (NFE_NAMESPACE, name)


def _sub(parent, name: str, text=None):
    element = etree.SubElement(parent, _tag(name))
    if text is not None:
        element.text = str(text)
    return element


@dataclass
class ItemAmounts:
    gross: Decimal
    discount: Decimal
    icms_base: Decimal = ZERO
    icms: Decimal = ZERO
    ipi: Decimal = ZERO
    pis_base: Decimal = ZERO
    pis: Decimal = ZERO
    cofins: Decimal = ZERO


@dataclass
class DocumentTotals:
    products: Decimal = ZERO
    discount: Decimal = ZERO
    freight: Decimal = ZERO
    insurance: Decimal = ZERO
    other: Decimal = ZERO
    icms_base: Decimal = ZERO
    icms: Decimal = ZERO
    ipi: Decimal = ZERO
    pis: Decimal = ZERO
    cofins: Decimal = ZERO

    @property
    def invoice(self) -> Decimal:
        """vNF = vProd - vDesc + vFrete + vSeg + vOutro + vIPI"""
        return quantize(
            self.products - self.discount + self.freight
            + self.insurance + self.other + self.ipi
        )


@dataclass(frozen=True)
class BuiltDocument:
    """Resultado do builder: XML nao assinado e os dados da chave"""
    xml: str
    access_key: str
    random_code: str
    issued_at: datetime
    environment: Environment
    send_mode: SendMode
    totals: DocumentTotals = field(compare=False)

    @property
    def document_id(self) -> str:
        return f"NFe{self.access_key}"


def compute_item_amounts(item: LineItem, simples_nacional: bool) -> ItemAmounts:
    gross = quantize(item.quantity * item.unit_price)
    discount = quantize(item.discount)
    amounts = ItemAmounts(gross=gross, discount=discount)
    base = gross - discount

    if not simples_nacional:
        if item.taxes.icms_cst not in ICMS_CST_SEM_DESTAQUE:
            amounts.icms_base = quantize(base)
            amounts.icms = quantize(base * item.taxes.icms_rate / 100)
        amounts.pis_base = quantize(base)
        amounts.pis = quantize(base * item.taxes.pis_rate / 100)
        amounts.cofins = quantize(base * item.taxes.cofins_rate / 100)

    if item.taxes.ipi_rate > 0:
        amounts.ipi = quantize(base * item.taxes.ipi_rate / 100)

    return amounts


def compute_totals(order: OrderData, issuer: Issuer) -> DocumentTotals:
    simples = issuer.tax_regime in (1, 2)
    totals = DocumentTotals(
        freight=quantize(order.freight_amount),
        insurance=quantize(order.insurance_amount),
        other=quantize(order.other_amount),
    )
    for item in order.items:
        amounts = compute_item_amounts(item, simples)
        totals.products += amounts.gross
        totals.discount += amounts.discount
        totals.icms_base += amounts.icms_base
        totals.icms += amounts.icms
        totals.ipi += amounts.ipi
        totals.pis += amounts.pis
        totals.cofins += amounts.cofins
    return totals


class DocumentBuilder:
    """Monta o XML da NF-e a partir do pedido"""

    def __init__(self, model: Optional[str] = None, application_version: Optional[str] = None):
        self.model = model or settings.NFE_MODEL
        self.application_version = application_version or settings.NFE_VERPROC

    def build(
        self,
        order: OrderData,
        issuer: Issuer,
        environment: Environment = Environment.HOMOLOGATION,
        send_mode: SendMode = SendMode.NORMAL,
        issued_at: Optional[datetime] = None,
        random_code: Optional[str] = None,
        contingency_at: Optional[datetime] = None,
        contingency_reason: Optional[str] = None,
    ) -> BuiltDocument:
        """
        Gera o XML da NF-e no formato exigido pela SEFAZ.

        Args:
            order: Pedido (destinatario, itens, pagamento)
            issuer: Emitente
            environment: 1=Producao, 2=Homologacao
            send_mode: NORMAL ou contingencia SVC (altera tpEmis e a chave)
            issued_at: Data/hora de emissao (padrao: agora, horario de Brasilia)
            random_code: cNF; reutilizado ao remontar a nota em contingencia
            contingency_at: dhCont, obrigatorio fora do modo NORMAL
            contingency_reason: xJust da contingencia (15 a 256 caracteres)

        Returns:
            BuiltDocument com o XML sem assinatura
        """
        environment = Environment(environment)
        send_mode = SendMode(send_mode)
        issued_at = issued_at or brazil_now()
        if issued_at.tzinfo is None:
            issued_at = issued_at.replace(tzinfo=BRAZIL_TZ)

        uf = issuer.address.uf.upper()
        if uf not in CODIGO_UF:
            raise ValidationError(f"UF do emitente invalida: {uf}")

        random_code = random_code or self._random_code(order.number)
        access_key = generate_access_key(
            uf=CODIGO_UF[uf],
            issuer_tax_id=only_digits(issuer.cnpj),
            model=self.model,
            series=order.series,
            number=order.number,
            emission_mode=send_mode.tp_emis,
            random_code=random_code,
            issued_at=issued_at,
        )

        totals = compute_totals(order, issuer)

        nfe = etree.Element(_tag('NFe'), nsmap=NSMAP)
        infNFe = _sub(nfe, 'infNFe')
        infNFe.set('versao', NFE_VERSION)
        infNFe.set('Id', f'NFe{access_key}')

        self._build_ide(
            infNFe, order, issuer, environment, send_mode, access_key,
            random_code, issued_at, contingency_at, contingency_reason,
        )
        self._build_emit(infNFe, issuer)
        self._build_dest(infNFe, order.recipient, environment)

        for downloader in order.authorized_downloaders:
            aut = _sub(infNFe, 'autXML')
            if downloader.cnpj:
                _sub(aut, 'CNPJ', only_digits(downloader.cnpj))
            else:
                _sub(aut, 'CPF', only_digits(downloader.cpf))

        simples = issuer.tax_regime in (1, 2)
        for i, item in enumerate(order.items, start=1):
            self._build_det(infNFe, i, item, simples)

        self._build_total(infNFe, totals)
        self._build_transp(infNFe, order)
        if order.billing:
            self._build_cobr(infNFe, order)
        self._build_pag(infNFe, order, totals)

        if order.additional_info or order.fiscal_info:
            inf_adic = _sub(infNFe, 'infAdic')
            if order.fiscal_info:
                _sub(inf_adic, 'infAdFisco', order.fiscal_info[:2000])
            if order.additional_info:
                _sub(inf_adic, 'infCpl', order.additional_info[:5000])

        if order.technical_responsible:
            resp = order.technical_responsible
            inf_resp = _sub(infNFe, 'infRespTec')
            _sub(inf_resp, 'CNPJ', only_digits(resp.cnpj))
            _sub(inf_resp, 'xContato', resp.contact[:60])
            _sub(inf_resp, 'email', resp.email[:60])
            _sub(inf_resp, 'fone', only_digits(resp.phone))

        xml = etree.tostring(nfe, encoding='unicode')
        logger.debug(f"[NFE-BUILDER] NF-e {order.series}/{order.number} montada: {access_key}")

        return BuiltDocument(
            xml=xml,
            access_key=access_key,
            random_code=random_code,
            issued_at=issued_at,
            environment=environment,
            send_mode=send_mode,
            totals=totals,
        )

    @staticmethod
    def _random_code(number: int) -> str:
        # cNF nao pode repetir o nNF
        while True:
            code = str(secrets.randbelow(10 ** 8)).zfill(8)
            if int(code) != number:
                return code

    def _build_ide(
        self, infNFe, order, issuer, environment, send_mode, access_key,
        random_code, issued_at, contingency_at, contingency_reason,
    ):
        ide = _sub(infNFe, 'ide')
        _sub(ide, 'cUF', access_key[:2])
        _sub(ide, 'cNF', random_code)
        _sub(ide, 'natOp', order.nature_of_operation[:60])
        _sub(ide, 'mod', self.model)
        _sub(ide, 'serie', order.series)
        _sub(ide, 'nNF', order.number)
        _sub(ide, 'dhEmi', format_datetime_tz(issued_at))
        _sub(ide, 'tpNF', '1')  # 1=Saida
        _sub(ide, 'idDest', order.destination_indicator)
        _sub(ide, 'cMunFG', issuer.address.municipality_code)
        _sub(ide, 'tpImp', '1')  # DANFE retrato
        _sub(ide, 'tpEmis', send_mode.tp_emis)
        _sub(ide, 'cDV', access_key[-1])
        _sub(ide, 'tpAmb', environment.value)
        _sub(ide, 'finNFe', '1')  # NF-e normal
        _sub(ide, 'indFinal', order.final_consumer)
        _sub(ide, 'indPres', order.presence_indicator)
        _sub(ide, 'procEmi', '0')  # Emissao propria
        _sub(ide, 'verProc', self.application_version[:20])

        if send_mode.is_contingency:
            reason = (contingency_reason or settings.NFE_CONTINGENCY_JUSTIFICATION).strip()
            if len(reason) < 15:
                raise ValidationError("Justificativa de contingencia deve ter no minimo 15 caracteres")
            _sub(ide, 'dhCont', format_datetime_tz(contingency_at or brazil_now()))
            _sub(ide, 'xJust', reason[:256])

    def _build_address(self, parent, tag: str, address: Address):
        ender = _sub(parent, tag)
        _sub(ender, 'xLgr', address.street[:60])
        _sub(ender, 'nro', (address.number or 'S/N')[:60])
        if address.complement:
            _sub(ender, 'xCpl', address.complement[:60])
        _sub(ender, 'xBairro', address.district[:60])
        _sub(ender, 'cMun', address.municipality_code)
        _sub(ender, 'xMun', address.municipality[:60])
        _sub(ender, 'UF', address.uf.upper())
        _sub(ender, 'CEP', only_digits(address.zip_code))
        _sub(ender, 'cPais', address.country_code)
        _sub(ender, 'xPais', address.country)
        if address.phone:
            _sub(ender, 'fone', only_digits(address.phone))

    def _build_emit(self, infNFe, issuer: Issuer):
        emit = _sub(infNFe, 'emit')
        _sub(emit, 'CNPJ', only_digits(issuer.cnpj))
        _sub(emit, 'xNome', issuer.legal_name[:60])
        if issuer.trade_name:
            _sub(emit, 'xFant', issuer.trade_name[:60])
        self._build_address(emit, 'enderEmit', issuer.address)
        _sub(emit, 'IE', only_digits(issuer.state_registration) or 'ISENTO')
        _sub(emit, 'CRT', issuer.tax_regime)

    def _build_dest(self, infNFe, recipient: Recipient, environment: Environment):
        dest = _sub(infNFe, 'dest')
        if recipient.cnpj:
            _sub(dest, 'CNPJ', only_digits(recipient.cnpj))
        else:
            _sub(dest, 'CPF', only_digits(recipient.cpf))

        # Regra da SEFAZ para o ambiente de homologacao
        if environment is Environment.HOMOLOGATION:
            name = 'NF-E EMITIDA EM AMBIENTE DE HOMOLOGACAO - SEM VALOR FISCAL'
        else:
            name = recipient.name
        _sub(dest, 'xNome', name[:60])

        if recipient.address:
            self._build_address(dest, 'enderDest', recipient.address)

        _sub(dest, 'indIEDest', recipient.ie_indicator)
        if recipient.ie_indicator == '1' and recipient.state_registration:
            _sub(dest, 'IE', only_digits(recipient.state_registration))
        if recipient.email:
            _sub(dest, 'email', recipient.email[:60])

    def _build_det(self, infNFe, index: int, item: LineItem, simples: bool):
        amounts = compute_item_amounts(item, simples)
        taxes = item.taxes

        det = _sub(infNFe, 'det')
        det.set('nItem', str(index))

        prod = _sub(det, 'prod')
        _sub(prod, 'cProd', item.code[:60])
        _sub(prod, 'cEAN', item.gtin)
        _sub(prod, 'xProd', item.description[:120])
        _sub(prod, 'NCM', only_digits(item.ncm))
        if item.cest:
            _sub(prod, 'CEST', only_digits(item.cest))
        _sub(prod, 'CFOP', item.cfop)
        _sub(prod, 'uCom', item.unit[:6])
        _sub(prod, 'qCom', format_decimal(item.quantity, 4))
        _sub(prod, 'vUnCom', format_decimal(item.unit_price, 10))
        _sub(prod, 'vProd', format_decimal(amounts.gross, 2))
        _sub(prod, 'cEANTrib', item.gtin)
        _sub(prod, 'uTrib', item.unit[:6])
        _sub(prod, 'qTrib', format_decimal(item.quantity, 4))
        _sub(prod, 'vUnTrib', format_decimal(item.unit_price, 10))
        if amounts.discount > 0:
            _sub(prod, 'vDesc', format_decimal(amounts.discount, 2))
        _sub(prod, 'indTot', '1')  # Compoe total

        imposto = _sub(det, 'imposto')

        icms = _sub(imposto, 'ICMS')
        if simples:
            icms_sn = _sub(icms, 'ICMSSN102')
            _sub(icms_sn, 'orig', taxes.icms_origin)
            _sub(icms_sn, 'CSOSN', taxes.icms_csosn)
        elif taxes.icms_cst in ICMS_CST_SEM_DESTAQUE:
            icms40 = _sub(icms, 'ICMS40')
            _sub(icms40, 'orig', taxes.icms_origin)
            _sub(icms40, 'CST', taxes.icms_cst)
        else:
            icms00 = _sub(icms, 'ICMS00')
            _sub(icms00, 'orig', taxes.icms_origin)
            _sub(icms00, 'CST', taxes.icms_cst)
            _sub(icms00, 'modBC', '3')  # Valor da operacao
            _sub(icms00, 'vBC', format_decimal(amounts.icms_base))
            _sub(icms00, 'pICMS', format_decimal(taxes.icms_rate, 2))
            _sub(icms00, 'vICMS', format_decimal(amounts.icms))

        if taxes.ipi_rate > 0:
            ipi = _sub(imposto, 'IPI')
            _sub(ipi, 'cEnq', taxes.ipi_framework_code)
            ipi_trib = _sub(ipi, 'IPITrib')
            _sub(ipi_trib, 'CST', taxes.ipi_cst)
            _sub(ipi_trib, 'vBC', format_decimal(amounts.gross - amounts.discount))
            _sub(ipi_trib, 'pIPI', format_decimal(taxes.ipi_rate, 2))
            _sub(ipi_trib, 'vIPI', format_decimal(amounts.ipi))

        self._build_contribution(imposto, 'PIS', taxes.pis_cst, taxes.pis_rate,
                                 amounts.pis_base, amounts.pis, simples)
        self._build_contribution(imposto, 'COFINS', taxes.cofins_cst, taxes.cofins_rate,
                                 amounts.pis_base, amounts.cofins, simples)

        if item.additional_info:
            _sub(det, 'infAdProd', item.additional_info[:500])

    def _build_contribution(self, imposto, name, cst, rate, base, value, simples):
        """PIS/COFINS: Outr (CST 49/99) no Simples, Aliq (CST 01) no regime normal"""
        group = _sub(imposto, name)
        if simples:
            outr = _sub(group, f'{name}Outr')
            _sub(outr, 'CST', cst or '49')
            _sub(outr, 'vBC', '0.00')
            _sub(outr, f'p{name}', '0.00')
            _sub(outr, f'v{name}', '0.00')
        else:
            aliq = _sub(group, f'{name}Aliq')
            _sub(aliq, 'CST', cst or '01')
            _sub(aliq, 'vBC', format_decimal(base))
            _sub(aliq, f'p{name}', format_decimal(rate, 4))
            _sub(aliq, f'v{name}', format_decimal(value))

    def _build_total(self, infNFe, totals: DocumentTotals):
        total = _sub(infNFe, 'total')
        icms_tot = _sub(total, 'ICMSTot')
        values = (
            ('vBC', totals.icms_base),
            ('vICMS', totals.icms),
            ('vICMSDeson', ZERO),
            ('vFCP', ZERO),
            ('vBCST', ZERO),
            ('vST', ZERO),
            ('vFCPST', ZERO),
            ('vFCPSTRet', ZERO),
            ('vProd', totals.products),
            ('vFrete', totals.freight),
            ('vSeg', totals.insurance),
            ('vDesc', totals.discount),
            ('vII', ZERO),
            ('vIPI', totals.ipi),
            ('vIPIDevol', ZERO),
            ('vPIS', totals.pis),
            ('vCOFINS', totals.cofins),
            ('vOutro', totals.other),
            ('vNF', totals.invoice),
        )
        for name, value in values:
            _sub(icms_tot, name, format_decimal(value))

    def _build_transp(self, infNFe, order: OrderData):
        transp = _sub(infNFe, 'transp')
        _sub(transp, 'modFrete', order.freight_mode)

    def _build_cobr(self, infNFe, order: OrderData):
        billing = order.billing
        cobr = _sub(infNFe, 'cobr')
        fat = _sub(cobr, 'fat')
        _sub(fat, 'nFat', billing.invoice_number[:60])
        _sub(fat, 'vOrig', format_decimal(billing.original_amount))
        _sub(fat, 'vDesc', format_decimal(billing.discount_amount))
        _sub(fat, 'vLiq', format_decimal(billing.net_amount))
        for installment in billing.installments:
            dup = _sub(cobr, 'dup')
            _sub(dup, 'nDup', installment.number.zfill(3)[:60])
            _sub(dup, 'dVenc', installment.due_date.isoformat())
            _sub(dup, 'vDup', format_decimal(installment.amount))

    def _build_pag(self, infNFe, order: OrderData, totals: DocumentTotals):
        pag = _sub(infNFe, 'pag')
        # Pagamento sem valor recebe o que falta para fechar a nota (so o primeiro)
        informed = sum((p.amount for p in order.payments if p.amount is not None and p.method != '90'), ZERO)
        remainder = max(totals.invoice - informed, ZERO)
        for payment in order.payments:
            det_pag = _sub(pag, 'detPag')
            if payment.indicator is not None:
                _sub(det_pag, 'indPag', payment.indicator)
            _sub(det_pag, 'tPag', payment.method)
            # 90 = Sem pagamento: vPag zerado
            if payment.method == '90':
                amount = ZERO
            elif payment.amount is not None:
                amount = payment.amount
            else:
                amount, remainder = remainder, ZERO
            _sub(det_pag, 'vPag', format_decimal(amount))

