"""
Active Directory lookups through the CRM user manager web service.

The CRM server exposes ``RetrieveADUserProperties`` on its legacy SOAP endpoint.
The response is a SOAP envelope whose result field holds a second, escaped XML
document describing the directory user. Decoding is done in two separate steps:

1. :func:`extract_result_document` parses the envelope and returns the text of
   the result field.
2. :func:`parse_directory_record` parses that text as its own XML document and
   returns the ``systemuser`` attributes.
"""

import logging
import xml.etree.ElementTree as ET
from typing import Dict, Any, Optional
from xml.sax.saxutils import escape

from crm_ad_sync.http_client import CrmHttpClient, CrmAPIError

logger = logging.getLogger(__name__)


WEB_SERVICES_NAMESPACE = 'http://schemas.microsoft.com/crm/2009/WebServices'
SOAP_ACTION = f'{WEB_SERVICES_NAMESPACE}/RetrieveADUserProperties'
RESULT_TAG = 'RetrieveADUserPropertiesResult'
SYSTEMUSER_TAG = 'systemuser'

SOAP_HEADERS = {
    'Accept': 'application/xml, text/xml, */*',
    'Content-Type': 'text/xml; charset=utf-8',
    'SOAPAction': SOAP_ACTION,
}

REQUEST_TEMPLATE = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/"'
    ' xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance"'
    ' xmlns:xsd="http://www.w3.org/2001/XMLSchema">'
    '<soap:Body>'
    '<RetrieveADUserProperties xmlns="{namespace}">'
    '<domainAccountName>{domain_account_name}</domainAccountName>'
    '</RetrieveADUserProperties>'
    '</soap:Body>'
    '</soap:Envelope>'
)


class DirectoryResponseError(CrmAPIError):
    """Raised when the directory service response cannot be decoded."""
    pass


def _local_name(tag: str) -> str:
    """Strip an ElementTree ``{namespace}`` prefix from a tag."""
    return tag.rsplit('}', 1)[-1] if isinstance(tag, str) else ''


def _find_local(root: ET.Element, name: str) -> Optional[ET.Element]:
    """Find the first element (root included) whose local name matches."""
    for element in root.iter():
        if _local_name(element.tag) == name:
            return element
    return None


def build_request_body(domain_account_name: str) -> str:
    """Render the SOAP request for one domain account."""
    return REQUEST_TEMPLATE.format(
        namespace=WEB_SERVICES_NAMESPACE,
        domain_account_name=escape(domain_account_name)
    )


def extract_result_document(envelope_text: str) -> Optional[str]:
    """
    Parse the outer SOAP envelope and return the embedded result document.

    Returns:
        The unescaped text of the result field, or None when it is empty

    Raises:
        DirectoryResponseError: If the envelope is malformed, carries a SOAP
            fault or has no result field
    """
    try:
        envelope = ET.fromstring(envelope_text)
    except ET.ParseError as e:
        raise DirectoryResponseError(f"Invalid SOAP envelope: {e}")

    fault = _find_local(envelope, 'Fault')
    if fault is not None:
        fault_string = _find_local(fault, 'faultstring')
        message = fault_string.text if fault_string is not None and fault_string.text else 'unknown fault'
        raise DirectoryResponseError(f"SOAP fault from directory service: {message.strip()}")

    result = _find_local(envelope, RESULT_TAG)
    if result is None:
        raise DirectoryResponseError(f"SOAP envelope has no {RESULT_TAG} element")

    text = (result.text or '').strip()
    return text or None


def parse_directory_record(document_text: str) -> Optional[Dict[str, str]]:
    """
    Parse the embedded directory document and return the ``systemuser`` attributes.

    Both XML attributes of the ``systemuser`` element and the text of its child
    elements are returned; child elements win when a name appears as both.

    Returns:
        Attribute dictionary, or None if the document has no ``systemuser`` element

    Raises:
        DirectoryResponseError: If the embedded document is not well-formed XML
    """
    try:
        document = ET.fromstring(document_text)
    except ET.ParseError as e:
        raise DirectoryResponseError(f"Invalid directory document in {RESULT_TAG}: {e}")

    systemuser = _find_local(document, SYSTEMUSER_TAG)
    if systemuser is None:
        return None

    record = {_local_name(name): value for name, value in systemuser.attrib.items()}
    for child in systemuser:
        name = _local_name(child.tag)
        if name:
            record[name] = (child.text or '').strip()
    return record


def lookup_directory_record(client: CrmHttpClient, domain_account_name: str) -> Optional[Dict[str, str]]:
    """
    Query the directory service for one domain account.

    Returns:
        Directory attributes, or None if the directory has no matching user

    Raises:
        CrmAPIError: On transport or HTTP failure
        DirectoryResponseError: If the response cannot be decoded
    """
    body = build_request_body(domain_account_name)
    status, reason, data = client.send('POST', client.directory_endpoint, body, dict(SOAP_HEADERS))

    # SOAP faults come back as HTTP 500 with a fault envelope
    if status >= 400 and not (status == 500 and data):
        raise CrmAPIError(f"Directory lookup failed for {domain_account_name}: HTTP {status}: {reason}",
                          status_code=status)

    document_text = extract_result_document(data)
    if document_text is None:
        return None
    return parse_directory_record(document_text)


def enrich_user(client: CrmHttpClient, user: Dict[str, str]) -> Optional[Dict[str, Any]]:
    """
    Combine a CRM user record with its Active Directory attributes.

    Args:
        client: CRM client
        user: ``{'id': ..., 'domainName': ...}`` record from the user listing

    Returns:
        ``{'crmInfo': user, 'adInfo': attributes}``, or None when the directory
        has no entry for the user's domain account
    """
    domain_name = user['domainName']
    logger.debug(f"Looking up directory properties for {domain_name}")

    ad_info = lookup_directory_record(client, domain_name)
    if ad_info is None:
        logger.warning(f"No directory record found for {domain_name}")
        return None

    return {'crmInfo': user, 'adInfo': ad_info}
