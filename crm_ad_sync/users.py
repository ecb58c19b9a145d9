"""
Listing of CRM system users that are linked to a domain account.
"""

import logging
from typing import Dict, Iterator
from urllib.parse import quote

from crm_ad_sync.http_client import CrmHttpClient

logger = logging.getLogger(__name__)


USER_QUERY = {
    '$select': 'domainname',
    '$filter': "isdisabled eq false and domainname ne ''",
}


def build_user_query_path(api_path: str) -> str:
    """Build the systemusers query path with an encoded query string."""
    query = "&".join(key + "=" + quote(value, safe="'") for key, value in USER_QUERY.items())
    return f"{api_path}/systemusers/?{query}"


def list_users(client: CrmHttpClient) -> Iterator[Dict[str, str]]:
    """
    Yield enabled CRM users that have a domain account name.

    Each record is ``{'id': systemuserid, 'domainName': domainname}`` in the
    order the server returns them. Any request failure raises
    :class:`~crm_ad_sync.http_client.CrmAPIError` from the first iteration.
    """
    response = client.request('GET', build_user_query_path(client.api_path))

    users = response.get('value', []) if isinstance(response, dict) else []
    logger.info(f"Retrieved {len(users)} enabled users with a domain account from CRM")

    for entry in users:
        user_id = entry.get('systemuserid')
        domain_name = entry.get('domainname')
        if not user_id or not domain_name:
            logger.warning(f"Skipping CRM user entry without id or domain name: {entry}")
            continue
        yield {'id': user_id, 'domainName': domain_name}
