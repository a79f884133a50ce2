from lxml.etree import QName

SAFT_NS = "urn:OECD:StandardAuditFile-Tax:AO_1.01_01"
XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"

NAMESPACE_MAP = {
    None: SAFT_NS,
    "xsi": XSI_NS,
}

SCHEMA_LOCATION = f"{SAFT_NS} SAF-T_AO_1.01_01.xsd"

FINAL_CONSUMER_ID = "CONSUMIDOR_FINAL"
FINAL_CONSUMER_TAX_ID = "999999999"
FINAL_CONSUMER_NAME = "Consumidor final"

def saft(tag: str) -> QName:
    return QName(SAFT_NS, tag)

def xsi(tag: str) -> QName:
    return QName(XSI_NS, tag)
