import argparse
import asyncio
import base64
import json
import logging
import aiohttp
from cryptography.fernet import Fernet
from jwcrypto import jwk
from ulid import ULID

from social.opensocial.api.resolve.handle import resolve_subject

logger = logging.getLogger(__name__)


async def genJwk() -> None:
    key = jwk.JWK.generate(kty="EC", crv="P-256", kid=str(ULID()), alg="ES256")
    print(key.export(private_key=True))


async def genCookieSecret() -> None:
    key = Fernet.generate_key()
    print(base64.b64encode(key).decode("utf-8"))


async def resolve(subject: str, plc_hostname: str) -> None:
    async with aiohttp.ClientSession() as http_session:
        resolved_subject = await resolve_subject(http_session, plc_hostname, subject)
    if resolved_subject is None:
        print(f"Unable to resolve {subject}")
        return
    print(json.dumps(resolved_subject.model_dump(), indent=2))


async def realMain() -> None:
    parser = argparse.ArgumentParser(
        prog="opensocial-util", description="OpenSocial API utilities"
    )

    parser.add_argument(
        "--plc-hostname",
        default="plc.directory",
        help="The PLC hostname to use for resolving did-method-plc DIDs.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    _ = subparsers.add_parser("gen-jwk", help="Generate a client assertion signing JWK")
    _ = subparsers.add_parser(
        "gen-cookie-secret", help="Generate a session cookie secret"
    )
    resolve_parser = subparsers.add_parser(
        "resolve", help="Resolve a handle or DID to its DID, handle and PDS"
    )
    resolve_parser.add_argument("subject", help="The handle or DID to resolve.")

    args = vars(parser.parse_args())
    command = args.get("command", None)

    if command == "gen-jwk":
        await genJwk()
    elif command == "gen-cookie-secret":
        await genCookieSecret()
    elif command == "resolve":
        await resolve(args["subject"], args["plc_hostname"])


def main() -> None:
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
