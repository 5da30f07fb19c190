"""
Unit tests for the request middleware chain in social.opensocial.api.atproto.chain

Tests cover request/response transformation, client assertions, DPoP proofs with nonce
retries, metrics, and the retry loop of the chain client.
"""

import json
from typing import Any, Dict, List
from unittest.mock import AsyncMock, Mock

import pytest
from aiohttp import ClientResponse, ClientSession, hdrs
from jwcrypto import jwk, jwt
from multidict import CIMultiDict, CIMultiDictProxy

from social.opensocial.api.atproto.chain import (
    ChainMiddlewareClient,
    ChainRequest,
    ChainResponse,
    GenerateClaimAssertionMiddleware,
    GenerateDpopMiddleware,
    StatsdMiddleware,
)
from social.opensocial.api.atproto.jwt import (
    create_client_assertion_claims,
    create_client_assertion_header,
    create_dpop_claims,
    create_dpop_header,
)


def create_headers_proxy(headers: Dict[str, str]) -> CIMultiDictProxy:
    return CIMultiDictProxy(CIMultiDict(headers))


def create_test_jwk() -> jwk.JWK:
    return jwk.JWK.generate(kty="EC", crv="P-256", alg="ES256")


def create_mock_response(
    status: int = 200,
    headers: Dict[str, str] | None = None,
    content_type: str = "application/json",
    body: Any = None,
) -> ClientResponse:
    """Create a mock aiohttp ClientResponse."""
    mock_response = AsyncMock(spec=ClientResponse)
    mock_response.status = status

    headers_dict = dict(headers or {})
    headers_dict.setdefault(hdrs.CONTENT_TYPE, content_type)
    mock_response.headers = create_headers_proxy(headers_dict)

    if content_type.startswith("application/json"):
        mock_response.json = AsyncMock(return_value=body if body is not None else {})
    elif content_type.startswith("text/"):
        mock_response.text = AsyncMock(return_value=body or "")
    else:
        mock_response.read = AsyncMock(return_value=body or b"")

    mock_response.raise_for_status = Mock()
    mock_response.closed = False
    mock_response.close = Mock()
    return mock_response


def decode_jwt(token: str, key: jwk.JWK) -> Dict[str, Any]:
    return json.loads(jwt.JWT(jwt=token, key=key).claims)


def dpop_middleware(dpop_key: jwk.JWK, nonce: str | None = None) -> GenerateDpopMiddleware:
    return GenerateDpopMiddleware(
        dpop_key,
        create_dpop_header(dpop_key.export_public(as_dict=True)),
        create_dpop_claims("POST", "https://auth.test/oauth/token", nonce=nonce),
    )


def nonce_challenge(nonce: str) -> ChainResponse:
    return ChainResponse(
        status=400,
        headers=create_headers_proxy({"DPoP-Nonce": nonce}),
        body={"error": "use_dpop_nonce"},
    )


class TestChainRequest:
    def test_copy_is_independent(self):
        original = ChainRequest(
            method="POST",
            url="https://example.com",
            headers={"A": "1"},
            kwargs={"data": {"k": "v"}},
        )

        copy = ChainRequest.from_chain_request(original)
        copy.headers["B"] = "2"
        copy.kwargs["timeout"] = 5

        assert copy is not original
        assert original.headers == {"A": "1"}
        assert original.kwargs == {"data": {"k": "v"}}

    def test_copy_of_minimal_request(self):
        copy = ChainRequest.from_chain_request(ChainRequest(method="GET", url="x"))
        assert copy.headers == {}
        assert copy.kwargs == {}


class TestChainResponse:
    async def test_from_json_response(self):
        response = create_mock_response(body={"ok": True})

        chain_response = await ChainResponse.from_aiohttp_response(response)

        assert chain_response.status == 200
        assert chain_response.body == {"ok": True}

    async def test_from_text_response(self):
        response = create_mock_response(content_type="text/plain", body="hello")
        chain_response = await ChainResponse.from_aiohttp_response(response)
        assert chain_response.body == "hello"

    async def test_from_binary_response(self):
        response = create_mock_response(
            content_type="application/octet-stream", body=b"\x00\x01"
        )
        chain_response = await ChainResponse.from_aiohttp_response(response)
        assert chain_response.body == b"\x00\x01"

    def test_error_code_from_body(self):
        assert nonce_challenge("n").error_code() == "use_dpop_nonce"

    def test_error_code_from_www_authenticate(self):
        chain_response = ChainResponse(
            status=401,
            headers=create_headers_proxy(
                {hdrs.WWW_AUTHENTICATE: 'DPoP error="use_dpop_nonce"'}
            ),
            body=b"",
        )
        assert chain_response.error_code() == "use_dpop_nonce"

    def test_no_error_code(self):
        chain_response = ChainResponse(
            status=200, headers=create_headers_proxy({}), body={"ok": True}
        )
        assert chain_response.error_code() is None

    def test_body_matches_kv(self):
        chain_response = nonce_challenge("n")
        assert chain_response.body_matches_kv("error", "use_dpop_nonce")
        assert not chain_response.body_matches_kv("error", "other")

    def test_json_body(self):
        headers = create_headers_proxy({})
        assert ChainResponse(200, headers, {"a": 1}).json_body() == {"a": 1}
        assert ChainResponse(200, headers, '{"a": 1}').json_body() == {"a": 1}
        assert ChainResponse(200, headers, b'{"a": 1}').json_body() == {"a": 1}

    @pytest.mark.parametrize("body", [None, "[1, 2]", "not json"])
    def test_json_body_rejects_non_objects(self, body):
        with pytest.raises(ValueError):
            ChainResponse(200, create_headers_proxy({}), body).json_body()


class TestStatsdMiddleware:
    async def test_records_status(self):
        statsd_client = Mock()
        response = (Mock(), ChainResponse(201, create_headers_proxy({}), {}))
        next_call = AsyncMock(return_value=response)

        result = await StatsdMiddleware(statsd_client).handle(
            next_call, ChainRequest(method="POST", url="x")
        )

        assert result is response
        statsd_client.timer.assert_called_once()
        args, kwargs = statsd_client.timer.call_args
        assert args[0] == "opensocial.client.request.time"
        assert kwargs["tag_dict"] == {"method": "post", "status": 201}

    async def test_records_failures(self):
        statsd_client = Mock()
        next_call = AsyncMock(side_effect=OSError("down"))

        with pytest.raises(OSError):
            await StatsdMiddleware(statsd_client).handle(
                next_call, ChainRequest(method="GET", url="x")
            )

        assert statsd_client.timer.call_args.kwargs["tag_dict"]["status"] == 0


class TestGenerateClaimAssertionMiddleware:
    async def test_adds_signed_assertion(self):
        signing_key = create_test_jwk()
        middleware = GenerateClaimAssertionMiddleware(
            signing_key,
            create_client_assertion_header("kid-1"),
            create_client_assertion_claims("https://client.test", "https://auth.test"),
        )
        form = {"grant_type": "authorization_code"}
        request = ChainRequest(method="POST", url="x", kwargs={"data": form})
        next_call = AsyncMock(return_value=(Mock(), Mock()))

        await middleware.handle(next_call, request)

        sent: ChainRequest = next_call.await_args.args[0]
        assertion = sent.kwargs["data"]["client_assertion"]
        claims = decode_jwt(assertion, signing_key)
        assert claims["iss"] == "https://client.test"
        assert claims["sub"] == "https://client.test"
        assert claims["aud"] == "https://auth.test"
        assert "jti" in claims
        assert sent.kwargs["data"]["grant_type"] == "authorization_code"
        assert "client_assertion" not in form

    async def test_each_attempt_gets_a_new_jti(self):
        signing_key = create_test_jwk()
        middleware = GenerateClaimAssertionMiddleware(
            signing_key,
            create_client_assertion_header("kid-1"),
            create_client_assertion_claims("https://client.test", "https://auth.test"),
        )
        next_call = AsyncMock(return_value=(Mock(), Mock()))

        jtis = []
        for _ in range(2):
            await middleware.handle(next_call, ChainRequest(method="POST", url="x"))
            assertion = next_call.await_args.args[0].kwargs["data"]["client_assertion"]
            jtis.append(decode_jwt(assertion, signing_key)["jti"])

        assert jtis[0] != jtis[1]


class TestGenerateDpopMiddleware:
    async def test_sets_dpop_header(self):
        dpop_key = create_test_jwk()
        ok = (Mock(), ChainResponse(200, create_headers_proxy({}), {}))
        next_call = AsyncMock(return_value=ok)

        result = await dpop_middleware(dpop_key).handle(
            next_call, ChainRequest(method="POST", url="x")
        )

        assert len(result) == 2
        proof = next_call.await_args.args[0].headers["DPoP"]
        claims = decode_jwt(proof, dpop_key)
        assert claims["htm"] == "POST"
        assert claims["htu"] == "https://auth.test/oauth/token"
        assert "nonce" not in claims

    async def test_proof_verifies_with_embedded_public_key(self):
        dpop_key = create_test_jwk()
        ok = (Mock(), ChainResponse(200, create_headers_proxy({}), {}))
        next_call = AsyncMock(return_value=ok)

        await dpop_middleware(dpop_key).handle(
            next_call, ChainRequest(method="POST", url="x")
        )

        proof = next_call.await_args.args[0].headers["DPoP"]
        token = jwt.JWT(jwt=proof, key=dpop_key)
        header = json.loads(token.header)
        assert header["typ"] == "dpop+jwt"
        assert "d" not in header["jwk"]
        assert len(json.loads(token.claims)["jti"]) > 0
        decode_jwt(proof, jwk.JWK(**header["jwk"]))

    async def test_nonce_challenge_requests_retry(self):
        dpop_key = create_test_jwk()
        middleware = dpop_middleware(dpop_key)
        next_call = AsyncMock(return_value=(Mock(), nonce_challenge("n1")))

        result = await middleware.handle(
            next_call, ChainRequest(method="POST", url="x", headers={"A": "1"})
        )

        assert len(result) == 3
        assert result[2].headers["A"] == "1"
        assert middleware.nonce == "n1"

    async def test_repeated_nonce_does_not_retry(self):
        dpop_key = create_test_jwk()
        middleware = dpop_middleware(dpop_key, nonce="n1")
        next_call = AsyncMock(return_value=(Mock(), nonce_challenge("n1")))

        result = await middleware.handle(next_call, ChainRequest(method="POST", url="x"))

        assert len(result) == 2

    async def test_other_errors_do_not_retry(self):
        dpop_key = create_test_jwk()
        error = ChainResponse(
            400,
            create_headers_proxy({"DPoP-Nonce": "n1"}),
            {"error": "invalid_grant"},
        )
        next_call = AsyncMock(return_value=(Mock(), error))

        result = await dpop_middleware(dpop_key).handle(
            next_call, ChainRequest(method="POST", url="x")
        )

        assert len(result) == 2


class TestChainMiddlewareClient:
    async def test_nonce_retry_end_to_end(self):
        dpop_key = create_test_jwk()
        middleware = dpop_middleware(dpop_key)
        first = create_mock_response(
            status=400, headers={"DPoP-Nonce": "n1"}, body={"error": "use_dpop_nonce"}
        )
        second = create_mock_response(status=200, body={"access_token": "a"})
        mock_session = Mock(spec=ClientSession)
        mock_session.request = AsyncMock(side_effect=[first, second])

        chain_client = ChainMiddlewareClient(
            client_session=mock_session, middleware=[middleware]
        )
        async with chain_client.post(
            "https://auth.test/oauth/token", data={"code": "c"}
        ) as (_, chain_response):
            assert chain_response.status == 200
            assert chain_response.body == {"access_token": "a"}

        assert mock_session.request.await_count == 2
        first_call, second_call = mock_session.request.await_args_list
        assert first_call.args == ("post", "https://auth.test/oauth/token")
        assert first_call.kwargs["data"] == {"code": "c"}
        first_proof = decode_jwt(first_call.kwargs["headers"]["DPoP"], dpop_key)
        second_proof = decode_jwt(second_call.kwargs["headers"]["DPoP"], dpop_key)
        assert "nonce" not in first_proof
        assert second_proof["nonce"] == "n1"
        assert first_proof["jti"] != second_proof["jti"]
        first.close.assert_called_once()
        second.close.assert_called_once()

    async def test_max_attempts(self):
        dpop_key = create_test_jwk()
        responses: List[ClientResponse] = [
            create_mock_response(
                status=400,
                headers={"DPoP-Nonce": f"n{i}"},
                body={"error": "use_dpop_nonce"},
            )
            for i in range(3)
        ]
        mock_session = Mock(spec=ClientSession)
        mock_session.request = AsyncMock(side_effect=responses)

        chain_client = ChainMiddlewareClient(
            client_session=mock_session, middleware=[dpop_middleware(dpop_key)]
        )
        with pytest.raises(Exception, match="Max attempts reached"):
            async with chain_client.post("https://auth.test/oauth/token"):
                pass

    async def test_raise_for_status(self):
        response = create_mock_response(status=500)
        response.raise_for_status.side_effect = Exception("500")
        mock_session = Mock(spec=ClientSession)
        mock_session.request = AsyncMock(return_value=response)

        chain_client = ChainMiddlewareClient(
            client_session=mock_session, raise_for_status=True
        )
        with pytest.raises(Exception, match="500"):
            await chain_client.get("https://pds.test/xrpc/x")
