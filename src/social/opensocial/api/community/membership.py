import asyncio
import logging
from typing import Any, Dict, List, Optional
from aiohttp import ClientSession
from pydantic import ValidationError
import sentry_sdk

from social.opensocial.api.app.config import Settings
from social.opensocial.api.app.errors import UpstreamFailure
from social.opensocial.api.atproto.oauth import OAuthCredential
from social.opensocial.api.atproto.xrpc import get_record, list_records
from social.opensocial.api.community.records import (
    MEMBERSHIP_COLLECTION,
    MEMBERSHIP_CONFIRMATION_COLLECTION,
    PROFILE_COLLECTION,
    PROFILE_RKEY,
    CommunityProfile,
    MembershipClaim,
    MembershipConfirmation,
    MembershipStatus,
    MembershipView,
    RecordEntry,
)
from social.opensocial.api.resolve.handle import resolve_did

logger = logging.getLogger(__name__)


def _entry_uri(entry: Any) -> Optional[str]:
    return entry.get("uri", None) if isinstance(entry, dict) else None


def parse_claims(entries: List[Dict[str, Any]]) -> List[RecordEntry[MembershipClaim]]:
    """Validate listed claims, dropping the ones that do not parse. Order is kept."""
    claims = []
    for entry in entries:
        try:
            claims.append(RecordEntry[MembershipClaim].model_validate(entry))
        except ValidationError as e:
            logger.warning(
                "dropping invalid membership claim uri=%s: %s", _entry_uri(entry), e
            )
    return claims


def parse_confirmations(
    entries: List[Dict[str, Any]],
) -> List[RecordEntry[MembershipConfirmation]]:
    confirmations = []
    for entry in entries:
        try:
            confirmations.append(
                RecordEntry[MembershipConfirmation].model_validate(entry)
            )
        except ValidationError as e:
            logger.warning(
                "skipping invalid membership confirmation uri=%s: %s",
                _entry_uri(entry),
                e,
            )
    return confirmations


def membership_status(
    claim_uri: str, confirmations: List[RecordEntry[MembershipConfirmation]]
) -> MembershipStatus:
    """A claim is active when a confirmation references its exact URI."""
    if any(c.value.membership == claim_uri for c in confirmations):
        return MembershipStatus.active
    return MembershipStatus.pending


async def reconcile_claim(
    settings: Settings,
    http_session: ClientSession,
    claim: RecordEntry[MembershipClaim],
) -> Optional[MembershipView]:
    """
    Build the view for one claim.

    The community's profile and its confirmations are fetched in parallel from the
    community's PDS. Returns None when anything about the community cannot be read; the
    failure is logged and never raised.
    """
    community_did = claim.value.community
    try:
        community = await resolve_did(http_session, settings.plc_hostname, community_did)
        if community is None:
            raise UpstreamFailure.identity_network(
                f"Unable to resolve community {community_did}"
            )

        async with asyncio.TaskGroup() as tg:
            profile_task = tg.create_task(
                get_record(
                    http_session,
                    community.pds,
                    community_did,
                    PROFILE_COLLECTION,
                    PROFILE_RKEY,
                )
            )
            confirmations_task = tg.create_task(
                list_records(
                    http_session,
                    community.pds,
                    community_did,
                    MEMBERSHIP_CONFIRMATION_COLLECTION,
                )
            )

        profile = RecordEntry[CommunityProfile].model_validate(profile_task.result())
        confirmations = parse_confirmations(confirmations_task.result())
    except Exception as e:
        sentry_sdk.capture_exception(e)
        logger.warning(
            "dropping membership claim uri=%s community=%s: %r",
            claim.uri,
            community_did,
            e,
        )
        return None

    return MembershipView(
        uri=claim.uri,
        community=community_did,
        joined_at=claim.value.joined_at,
        status=membership_status(claim.uri, confirmations),
        community_profile=profile.value,
    )


async def list_memberships(
    settings: Settings,
    http_session: ClientSession,
    credential: OAuthCredential,
) -> List[MembershipView]:
    """
    List the signed-in user's memberships with their confirmation status.

    Claims are read from the user's repository and reconciled concurrently. Claims whose
    community data cannot be read are left out. The result keeps the order of the claim
    listing.

    Raises:
        UpstreamFailure: When the user's own claims cannot be listed
    """
    entries = await list_records(
        http_session, credential.pds, credential.did, MEMBERSHIP_COLLECTION
    )
    claims = parse_claims(entries)

    views = await asyncio.gather(
        *[reconcile_claim(settings, http_session, claim) for claim in claims]
    )

    return [view for view in views if view is not None]
