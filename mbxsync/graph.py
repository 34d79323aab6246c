"""
Microsoft Graph group membership source.

Alternative to reading membership through Exchange Online PowerShell:
lists a security group's direct user members via Microsoft Graph using
app-only (client credentials) authentication.

Requirements:
- Entra ID App Registration with the following API permissions (Application type):
  - GroupMember.Read.All (or Group.Read.All)
  - User.ReadBasic.All
"""
import asyncio
import logging
import re
from typing import Any, List, Optional, Set

from azure.core.exceptions import ClientAuthenticationError
from azure.identity import ClientSecretCredential
from kiota_abstractions.base_request_configuration import RequestConfiguration
from msgraph.generated.groups.groups_request_builder import GroupsRequestBuilder
from msgraph.generated.models.o_data_errors.o_data_error import ODataError
from msgraph.graph_service_client import GraphServiceClient

from .constants import GRAPH_SCOPES, GRAPH_USER_ODATA_TYPE
from .models import SecurityGroup, dedupe_principals
from .utils import DirectoryUnavailable, GroupNotFound

logger = logging.getLogger(__name__)

_GUID_RE = re.compile(r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$', re.IGNORECASE)

GROUP_SELECT = ["id", "displayName", "mail", "mailEnabled", "securityEnabled"]


# =============================================================================
# Graph Client
# =============================================================================

def get_graph_client(tenant_id: str, client_id: str, client_secret: str) -> GraphServiceClient:
    """Create Microsoft Graph API client."""
    credential = ClientSecretCredential(
        tenant_id=tenant_id,
        client_id=client_id,
        client_secret=client_secret
    )
    return GraphServiceClient(credentials=credential, scopes=GRAPH_SCOPES)


async def collect_all_pages(initial_response, get_next_page_func) -> List[Any]:
    """Helper to collect all pages from a paginated Graph API response.

    Microsoft Graph API returns max 100 items per page by default.
    This helper follows odata_next_link to collect all items. A failure
    on a later page propagates: a truncated member list would revoke
    access from real members.

    Args:
        initial_response: The first response from a Graph API call
        get_next_page_func: Async function to get next page given a next_link

    Returns:
        List of all items from all pages
    """
    all_items = []
    response = initial_response

    while response:
        if getattr(response, 'value', None):
            all_items.extend(response.value)

        next_link = getattr(response, 'odata_next_link', None)
        if not next_link:
            break
        response = await get_next_page_func(next_link)

    return all_items


def _status_code(exc: Exception) -> Optional[int]:
    return getattr(exc, 'response_status_code', None)


def _odata_message(exc: ODataError) -> str:
    error = getattr(exc, 'error', None)
    if error is not None:
        code = getattr(error, 'code', '') or ''
        message = getattr(error, 'message', '') or ''
        return f"{code}: {message}".strip(': ')
    return str(exc)


def _escape_odata(value: str) -> str:
    return value.replace("'", "''")


# =============================================================================
# Membership Source
# =============================================================================

class GraphMembershipSource:
    """Reads security group membership from Microsoft Graph."""

    def __init__(self, graph_client: GraphServiceClient):
        self.graph_client = graph_client

    @classmethod
    def from_credentials(cls, tenant_id: str, client_id: str, client_secret: str) -> "GraphMembershipSource":
        return cls(get_graph_client(tenant_id, client_id, client_secret))

    async def _find_group(self, identity: str) -> SecurityGroup:
        if _GUID_RE.match(identity):
            group = await self.graph_client.groups.by_group_id(identity).get()
            candidates = [group] if group else []
        else:
            query_params = GroupsRequestBuilder.GroupsRequestBuilderGetQueryParameters(
                filter=f"mail eq '{_escape_odata(identity)}' or displayName eq '{_escape_odata(identity)}'",
                select=GROUP_SELECT,
            )
            response = await self.graph_client.groups.get(
                request_configuration=RequestConfiguration(query_parameters=query_params)
            )
            candidates = list(response.value) if response and response.value else []

        if not candidates:
            raise GroupNotFound(f"Group '{identity}' was not found", identity=identity)
        if len(candidates) > 1:
            raise GroupNotFound(f"Group '{identity}' is ambiguous ({len(candidates)} groups match)",
                                identity=identity)

        group = candidates[0]
        if not getattr(group, 'security_enabled', False):
            raise GroupNotFound(f"'{identity}' is not a security group", identity=identity)

        return SecurityGroup(
            identity=group.id,
            display_name=group.display_name or "",
            primary_smtp_address=group.mail or "",
            recipient_type_details="SecurityGroup",
        )

    async def _list_members_async(self, group_id: str) -> List[str]:
        group = await self._find_group(group_id)
        members_builder = self.graph_client.groups.by_group_id(group.identity).members

        first_page = await members_builder.get()
        objects = await collect_all_pages(
            first_page,
            lambda next_link: members_builder.with_url(next_link).get(),
        )

        principals = []
        for obj in objects:
            odata_type = getattr(obj, 'odata_type', '') or ''
            if odata_type and odata_type != GRAPH_USER_ODATA_TYPE:
                logger.debug(f"Skipping non-user member {getattr(obj, 'id', '')} ({odata_type})")
                continue
            upn = getattr(obj, 'user_principal_name', None) or getattr(obj, 'mail', None)
            if not upn:
                logger.debug(f"Skipping member without principal name: {getattr(obj, 'id', '')}")
                continue
            principals.append(upn)

        group.members = dedupe_principals(principals)
        return group.members

    def _run(self, coro, group_id: str):
        try:
            return asyncio.run(coro)
        except ODataError as e:
            if _status_code(e) == 404:
                raise GroupNotFound(f"Group '{group_id}' was not found", identity=group_id) from e
            raise DirectoryUnavailable(
                f"Graph request for '{group_id}' failed: {_odata_message(e)}", original_error=e
            ) from e
        except ClientAuthenticationError as e:
            raise DirectoryUnavailable(f"Graph authentication failed: {e}", original_error=e) from e

    def resolve_group(self, identity: str) -> SecurityGroup:
        """Resolve a group by object ID, mail address or display name.

        Raises:
            GroupNotFound: no single security group matches
            DirectoryUnavailable: Graph could not be reached
        """
        return self._run(self._find_group(identity), identity)

    def list_members(self, group_id: str) -> Set[str]:
        """Return the normalized UPNs of the group's direct user members."""
        members = self._run(self._list_members_async(group_id), group_id)
        logger.debug(f"Graph returned {len(members)} user members for {group_id}")
        return set(members)
