"""
Updates CRM system users with their Active Directory attributes.
"""

import json
import logging
from typing import Dict, Any, Optional

from crm_ad_sync.http_client import CrmHttpClient, ODATA_HEADERS

logger = logging.getLogger(__name__)


# Payload keys in the order they are written to the CRM
UPDATE_FIELDS = (
    'title',
    'firstname',
    'lastname',
    'address1_telephone1',
    'address1_telephone3',
    'address1_fax',
    'homephone',
    'mobilephone',
    'address1_postofficebox',
    'address1_line1',
    'address1_city',
    'address1_postalcode',
    'address1_stateorprovince',
    'domainname',
)

# Writing the primary email back resets the mailbox's email approval in CRM
EXCLUDED_FIELDS = ('internalemailaddress', 'personalemailaddress', 'emailaddress', 'mail')

UPDATE_HEADERS = {key: value for key, value in ODATA_HEADERS.items() if key != 'Accept'}


def _is_excluded(field: str) -> bool:
    return field.lower() in EXCLUDED_FIELDS or 'email' in field.lower()


def build_update_payload(ad_info: Dict[str, Any]) -> Dict[str, Any]:
    """Select the writable directory attributes, in schema order, never including email."""
    return {
        field: ad_info[field]
        for field in UPDATE_FIELDS
        if field in ad_info and not _is_excluded(field)
    }


def serialize_payload(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(',', ':'))


def full_name(enriched: Dict[str, Any]) -> str:
    """Best display name for log lines."""
    ad_info = enriched.get('adInfo') or {}
    name = ad_info.get('fullname') or ' '.join(
        part for part in (ad_info.get('firstname'), ad_info.get('lastname')) if part
    )
    return name or enriched.get('crmInfo', {}).get('domainName', '')


def update_user(client: CrmHttpClient, enriched: Optional[Dict[str, Any]], dry_run: bool = False) -> bool:
    """
    PATCH one CRM user with the attributes of an enriched record.

    Failures are logged with the user id, name and attempted payload and
    reported through the return value; this function does not raise.

    Args:
        client: CRM client
        enriched: ``{'crmInfo': ..., 'adInfo': ...}`` record, or None
        dry_run: Log the payload instead of sending it

    Returns:
        True if the CRM answered 204 No Content (or dry_run), False otherwise
    """
    if not enriched:
        return False

    user_id = enriched['crmInfo']['id']
    name = full_name(enriched)
    payload = serialize_payload(build_update_payload(enriched['adInfo']))

    if dry_run:
        logger.info(f"Dry run: would update user {user_id} ({name}) with {payload}")
        return True

    try:
        status, reason, data = client.send(
            'PATCH', f"{client.api_path}/systemusers({user_id})", payload, dict(UPDATE_HEADERS)
        )
    except Exception as e:
        logger.error(f"Failed to update user {user_id} ({name}) with {payload}: {e}")
        return False

    if status == 204:
        logger.info(f"Updated user {user_id} ({name})")
        return True

    detail = f"HTTP {status}: {reason}"
    if data:
        detail += f" - {data.strip()[:500]}"
    logger.error(f"Failed to update user {user_id} ({name}) with {payload}: {detail}")
    return False
