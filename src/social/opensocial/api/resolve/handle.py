"""AT Protocol handle and DID resolution utilities.

Resolves AT Protocol handles to DIDs using DNS TXT records and HTTPS well-known endpoints,
and DIDs to their handle and PDS using did:plc and did:web documents.
"""

import asyncio
from enum import IntEnum
from aiohttp import ClientSession
from pydantic import BaseModel
from aiodns import DNSResolver
from typing import Optional, Any, Dict
import sentry_sdk


class SubjectType(IntEnum):
    """Kind of login input."""

    did_method_plc = 1
    did_method_web = 2
    hostname = 3
    service = 4


class ParsedSubject(BaseModel):
    subject_type: SubjectType
    subject: str


class ResolvedSubject(BaseModel):
    """Fully resolved identity: DID, handle and PDS endpoint."""

    did: str
    handle: str
    pds: str


async def resolve_handle_dns(handle: str) -> Optional[str]:
    """Resolve a handle to a DID through the _atproto.{handle} TXT record."""
    resolver = DNSResolver()
    try:
        results = await resolver.query(f"_atproto.{handle}", "TXT")
    except Exception as e:
        sentry_sdk.capture_exception(e)
        return None
    for result in results or []:
        text = result.text
        if isinstance(text, bytes):
            text = text.decode("utf-8")
        if text.startswith("did="):
            return text.removeprefix("did=")
    return None


async def resolve_handle_http(session: ClientSession, handle: str) -> Optional[str]:
    """Resolve a handle to a DID through https://{handle}/.well-known/atproto-did."""
    try:
        async with session.get(f"https://{handle}/.well-known/atproto-did") as resp:
            if resp.status != 200:
                return None
            body = (await resp.text()).strip()
            if body.startswith("did:"):
                return body
            return None
    except Exception as e:
        sentry_sdk.capture_exception(e)
        return None


async def resolve_handle(session: ClientSession, handle: str) -> Optional[str]:
    """Resolve a handle using DNS and HTTPS concurrently, preferring DNS."""
    async with asyncio.TaskGroup() as tg:
        dns_result = tg.create_task(resolve_handle_dns(handle))
        http_result = tg.create_task(resolve_handle_http(session, handle))
    if dns_result.result() is not None:
        return dns_result.result()
    return http_result.result()


def handle_predicate(value: str) -> bool:
    return value is not None and value.startswith("at://")


def pds_predicate(value: Dict[str, Any]) -> bool:
    return (
        value is not None
        and value.get("type", None) == "AtprotoPersonalDataServer"
        and "serviceEndpoint" in value
    )


def subject_from_did_document(did: str, document: Any) -> Optional[ResolvedSubject]:
    """Extract the handle and PDS endpoint from a DID document."""
    if not isinstance(document, dict):
        return None
    handle = next(filter(handle_predicate, document.get("alsoKnownAs", [])), None)
    pds = next(filter(pds_predicate, document.get("service", [])), None)
    if handle is None or pds is None:
        return None
    return ResolvedSubject(
        did=did,
        handle=handle.removeprefix("at://"),
        pds=pds.get("serviceEndpoint"),
    )


def did_web_document_url(did: str) -> Optional[str]:
    parts = did.removeprefix("did:web:").split(":")
    if len(parts) == 0 or len(parts[0]) == 0:
        return None
    if len(parts) == 1:
        parts.append(".well-known")
    return "https://{inner}/did.json".format(inner="/".join(parts))


async def resolve_did(
    session: ClientSession, plc_hostname: str, did: str
) -> Optional[ResolvedSubject]:
    """Resolve a did:plc or did:web DID. Other methods are unsupported."""
    if did.startswith("did:plc:"):
        url = f"https://{plc_hostname}/{did}"
    elif did.startswith("did:web:"):
        url = did_web_document_url(did)
    else:
        return None

    if url is None:
        return None

    async with session.get(url) as resp:
        if resp.status != 200:
            return None
        document = await resp.json(content_type=None)
    return subject_from_did_document(did, document)


async def resolve_subject(
    session: ClientSession, plc_hostname: str, subject: str
) -> Optional[ResolvedSubject]:
    """Resolve a handle or DID to its DID, handle and PDS.

    Service URLs are not identities and resolve to None.
    """
    parsed_subject = parse_input(subject)
    if parsed_subject is None or parsed_subject.subject_type == SubjectType.service:
        return None

    did: Optional[str] = None
    if parsed_subject.subject_type == SubjectType.hostname:
        did = await resolve_handle(session, parsed_subject.subject)
    else:
        did = parsed_subject.subject

    if did is None:
        return None

    return await resolve_did(session, plc_hostname, did)


def parse_input(subject: str) -> Optional[ParsedSubject]:
    """Classify login input as a DID, a handle, or a service URL."""
    subject = subject.strip()
    if len(subject) == 0:
        return None

    if subject.startswith("https://") or subject.startswith("http://"):
        return ParsedSubject(
            subject_type=SubjectType.service, subject=subject.rstrip("/")
        )

    subject = subject.removeprefix("at://")
    subject = subject.removeprefix("@")

    if subject.startswith("did:plc:"):
        return ParsedSubject(subject_type=SubjectType.did_method_plc, subject=subject)
    elif subject.startswith("did:web:"):
        return ParsedSubject(subject_type=SubjectType.did_method_web, subject=subject)

    if len(subject) == 0 or "." not in subject:
        return None

    return ParsedSubject(subject_type=SubjectType.hostname, subject=subject.lower())
