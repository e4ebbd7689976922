"""CFDI 4.0 rendering with the Nómina 1.2 complement.

The builder is pure: the same detail, employee, company and period always
render byte-identical XML. Fecha is the payment date at noon and Folio is
derived from the period and the employee number.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date
from decimal import Decimal

from lxml import etree

from nomina_engine.calculators.rounding import ZERO, round_currency, sum_and_round
from nomina_engine.models import Company, Employee, PayrollDetail, PayrollDetailLine, PayrollPeriod

CFDI_NS = "http://www.sat.gob.mx/cfd/4"
NOMINA_NS = "http://www.sat.gob.mx/nomina12"
TFD_NS = "http://www.sat.gob.mx/TimbreFiscalDigital"
XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"

SCHEMA_LOCATION = (
    "http://www.sat.gob.mx/cfd/4 "
    "http://www.sat.gob.mx/sitio_internet/cfd/4/cfdv40.xsd "
    "http://www.sat.gob.mx/nomina12 "
    "http://www.sat.gob.mx/sitio_internet/cfd/nomina/nomina12.xsd"
)
TFD_SCHEMA_LOCATION = (
    "http://www.sat.gob.mx/TimbreFiscalDigital "
    "http://www.sat.gob.mx/sitio_internet/cfd/TimbreFiscalDigital/TimbreFiscalDigitalv11.xsd"
)

NSMAP = {"cfdi": CFDI_NS, "nomina12": NOMINA_NS, "xsi": XSI_NS}

CONTRACT_TYPE_CODES = {
    "INDEFINITE": "01",
    "FIXED_TERM": "02",
    "SEASONAL": "03",
    "TRIAL_PERIOD": "05",
    "TRAINING": "06",
}
RISK_CLASS_CODES = {
    "CLASE_I": "1",
    "CLASE_II": "2",
    "CLASE_III": "3",
    "CLASE_IV": "4",
    "CLASE_V": "5",
}
PAYMENT_FREQUENCY_CODES = {
    "WEEKLY": "02",
    "BIWEEKLY": "04",
    "MONTHLY": "05",
}

DEFAULT_ZIP = "00000"
DEFAULT_PERCEPTION_TYPE = "001"
DEFAULT_DEDUCTION_TYPE = "001"


def _c(tag: str) -> str:
    return f"{{{CFDI_NS}}}{tag}"


def _n(tag: str) -> str:
    return f"{{{NOMINA_NS}}}{tag}"


def money(value: Decimal | None) -> str:
    """Render an amount with exactly two decimals."""
    return str(round_currency(value if value is not None else ZERO))


def seniority_weeks(hire_date: date, as_of: date) -> int:
    """Whole weeks of service from hire date to ``as_of`` (never negative)."""
    return max(0, (as_of - hire_date).days // 7)


def make_folio(period: PayrollPeriod, employee: Employee) -> str:
    """Deterministic folio: year, period type initial, period number, employee number."""
    folio = f"{period.year}{period.period_type[:1]}{period.period_number:02d}-{employee.employee_number}"
    return folio[:40]


def _set_optional(element: etree._Element, name: str, value: str | None) -> None:
    if value:
        element.set(name, value)


class CfdiXmlBuilder:
    """Renders a payroll detail snapshot as an unsigned CFDI document."""

    def build(
        self,
        detail: PayrollDetail,
        company: Company,
        employee: Employee,
        period: PayrollPeriod,
    ) -> str:
        perceptions = detail.perceptions
        deductions = detail.deductions

        root = etree.Element(_c("Comprobante"), nsmap=NSMAP)
        root.set(f"{{{XSI_NS}}}schemaLocation", SCHEMA_LOCATION)
        root.set("Version", "4.0")
        root.set("Serie", "NOM")
        root.set("Folio", make_folio(period, employee))
        root.set("Fecha", f"{period.payment_date.isoformat()}T12:00:00")
        root.set("FormaPago", "99")
        root.set("SubTotal", money(detail.total_perceptions))
        if deductions:
            root.set("Descuento", money(detail.total_deductions))
        root.set("Moneda", "MXN")
        root.set("Total", money(detail.net_pay))
        root.set("TipoDeComprobante", "N")
        root.set("Exportacion", "01")
        root.set("MetodoPago", "PUE")
        root.set("LugarExpedicion", company.zip_code or DEFAULT_ZIP)

        emisor = etree.SubElement(root, _c("Emisor"))
        emisor.set("Rfc", company.rfc)
        emisor.set("Nombre", company.name)
        emisor.set("RegimenFiscal", company.regimen_fiscal or "601")

        receptor = etree.SubElement(root, _c("Receptor"))
        receptor.set("Rfc", employee.rfc)
        receptor.set("Nombre", employee.full_name)
        receptor.set("DomicilioFiscalReceptor", employee.zip_code or company.zip_code or DEFAULT_ZIP)
        receptor.set("RegimenFiscalReceptor", "605")
        receptor.set("UsoCFDI", "CN01")

        conceptos = etree.SubElement(root, _c("Conceptos"))
        concepto = etree.SubElement(conceptos, _c("Concepto"))
        concepto.set("ClaveProdServ", "84111505")
        concepto.set("Cantidad", "1")
        concepto.set("ClaveUnidad", "ACT")
        concepto.set("Descripcion", "Pago de nómina")
        concepto.set("ValorUnitario", money(detail.total_perceptions))
        concepto.set("Importe", money(detail.total_perceptions))
        if deductions:
            concepto.set("Descuento", money(detail.total_deductions))
        concepto.set("ObjetoImp", "01")

        complemento = etree.SubElement(root, _c("Complemento"))
        self._build_nomina(complemento, detail, company, employee, period, perceptions, deductions)

        return etree.tostring(
            root, xml_declaration=True, encoding="UTF-8", pretty_print=True
        ).decode("utf-8")

    def _build_nomina(
        self,
        parent: etree._Element,
        detail: PayrollDetail,
        company: Company,
        employee: Employee,
        period: PayrollPeriod,
        perceptions: Sequence[PayrollDetailLine],
        deductions: Sequence[PayrollDetailLine],
    ) -> None:
        nomina = etree.SubElement(parent, _n("Nomina"))
        nomina.set("Version", "1.2")
        nomina.set("TipoNomina", "O")
        nomina.set("FechaPago", period.payment_date.isoformat())
        nomina.set("FechaInicialPago", period.start_date.isoformat())
        nomina.set("FechaFinalPago", period.end_date.isoformat())
        nomina.set("NumDiasPagados", f"{Decimal(detail.worked_days):.3f}")
        nomina.set("TotalPercepciones", money(detail.total_perceptions))
        if deductions:
            nomina.set("TotalDeducciones", money(detail.total_deductions))

        emisor = etree.SubElement(nomina, _n("Emisor"))
        _set_optional(emisor, "RegistroPatronal", company.registro_patronal)

        daily_salary = employee.integrated_daily_salary
        if daily_salary is None:
            daily_salary = Decimal(employee.base_salary) / Decimal("30")

        receptor = etree.SubElement(nomina, _n("Receptor"))
        receptor.set("Curp", employee.curp)
        _set_optional(receptor, "NumSeguridadSocial", employee.nss)
        receptor.set("FechaInicioRelLaboral", employee.hire_date.isoformat())
        receptor.set("Antigüedad", f"P{seniority_weeks(employee.hire_date, period.end_date)}W")
        receptor.set("TipoContrato", CONTRACT_TYPE_CODES.get(employee.contract_type, "01"))
        receptor.set("TipoJornada", "01")
        receptor.set("TipoRegimen", "02")
        receptor.set("NumEmpleado", employee.employee_number)
        _set_optional(receptor, "Departamento", employee.department)
        _set_optional(receptor, "Puesto", employee.position)
        receptor.set("RiesgoPuesto", RISK_CLASS_CODES.get(employee.risk_class, "1"))
        receptor.set("PeriodicidadPago", PAYMENT_FREQUENCY_CODES.get(period.period_type, "04"))
        receptor.set("SalarioBaseCotApor", money(daily_salary))
        receptor.set("SalarioDiarioIntegrado", money(daily_salary))
        receptor.set("ClaveEntFed", employee.state_code)

        if perceptions:
            total_taxable = sum_and_round(p.taxable_amount for p in perceptions)
            total_exempt = sum_and_round(p.exempt_amount for p in perceptions)
            percepciones = etree.SubElement(nomina, _n("Percepciones"))
            percepciones.set("TotalSueldos", money(total_taxable + total_exempt))
            percepciones.set("TotalGravado", money(total_taxable))
            percepciones.set("TotalExento", money(total_exempt))
            for line in perceptions:
                item = etree.SubElement(percepciones, _n("Percepcion"))
                item.set("TipoPercepcion", line.sat_code or DEFAULT_PERCEPTION_TYPE)
                item.set("Clave", line.concept_code)
                item.set("Concepto", line.concept_name)
                item.set("ImporteGravado", money(line.taxable_amount))
                item.set("ImporteExento", money(line.exempt_amount))

        if deductions:
            deducciones = etree.SubElement(nomina, _n("Deducciones"))
            deducciones.set(
                "TotalOtrasDeducciones", money(sum_and_round(d.amount for d in deductions))
            )
            for line in deductions:
                item = etree.SubElement(deducciones, _n("Deduccion"))
                item.set("TipoDeduccion", line.sat_code or DEFAULT_DEDUCTION_TYPE)
                item.set("Clave", line.concept_code)
                item.set("Concepto", line.concept_name)
                item.set("Importe", money(line.amount))
