from abc import ABC, abstractmethod
from dataclasses import dataclass
import json
import secrets
from time import time
from types import TracebackType
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generator,
    Optional,
    Sequence,
    Tuple,
)
import logging
from aio_statsd import TelegrafStatsdClient
from aiohttp import ClientResponse, ClientSession, hdrs
from aiohttp.typedefs import StrOrURL
from multidict import CIMultiDictProxy
from jwcrypto import jwt, jwk

RequestFunc = Callable[..., Awaitable[ClientResponse]]

logger = logging.getLogger(__name__)


@dataclass
class ChainRequest:
    method: str
    url: StrOrURL
    headers: dict[str, Any] | None = None
    kwargs: dict[str, Any] | None = None

    @staticmethod
    def from_chain_request(request: "ChainRequest") -> "ChainRequest":
        return ChainRequest(
            method=request.method,
            url=request.url,
            headers=dict(request.headers or {}),
            kwargs=dict(request.kwargs or {}),
        )


@dataclass
class ChainResponse:
    status: int
    headers: CIMultiDictProxy[str]
    body: str | bytes | dict[str, Any] | None = None

    @staticmethod
    async def from_aiohttp_response(response: ClientResponse) -> "ChainResponse":
        status = response.status
        headers = response.headers

        content_type = response.headers.get(hdrs.CONTENT_TYPE, "")

        if content_type.startswith("application/json"):
            return ChainResponse(
                status=status, headers=headers, body=await response.json()
            )
        elif content_type.startswith("text/"):
            return ChainResponse(
                status=status, headers=headers, body=await response.text()
            )
        return ChainResponse(status=status, headers=headers, body=await response.read())

    def body_matches_kv(self, key: str, value: Any) -> bool:
        return (
            isinstance(self.body, dict) and key in self.body and self.body[key] == value
        )

    def error_code(self) -> Optional[str]:
        """OAuth error code from the JSON body or the WWW-Authenticate header."""
        if isinstance(self.body, dict) and isinstance(self.body.get("error"), str):
            return self.body["error"]
        www_authenticate = self.headers.get(hdrs.WWW_AUTHENTICATE, "")
        if 'error="use_dpop_nonce"' in www_authenticate:
            return "use_dpop_nonce"
        if 'error="invalid_dpop_proof"' in www_authenticate:
            return "invalid_dpop_proof"
        return None

    def json_body(self) -> Dict[str, Any]:
        if isinstance(self.body, dict):
            return self.body
        if isinstance(self.body, (str, bytes)):
            decoded = json.loads(self.body)
            if isinstance(decoded, dict):
                return decoded
        raise ValueError("Response body is not a JSON object")


NextChainResponseCallbackType = (
    Tuple[ClientResponse, ChainResponse]
    | Tuple[ClientResponse, ChainResponse, ChainRequest]
)

NextChainCallbackType = Callable[
    [ChainRequest], Awaitable[NextChainResponseCallbackType]
]


class RequestMiddlewareBase(ABC):
    @abstractmethod
    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        pass

    def handle_gen(self, next: NextChainCallbackType) -> NextChainCallbackType:
        async def next_invoke(request: ChainRequest) -> NextChainResponseCallbackType:
            return await self.handle(next, request)

        return next_invoke


class StatsdMiddleware(RequestMiddlewareBase):
    def __init__(self, statsd_client: TelegrafStatsdClient) -> None:
        super().__init__()
        self._statsd_client = statsd_client

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        start_time = time()
        status = 0
        try:
            response = await next(request)
            status = response[1].status
            return response
        finally:
            self._statsd_client.timer(
                "opensocial.client.request.time",
                time() - start_time,
                tag_dict={"method": request.method.lower(), "status": status},
            )


class GenerateClaimAssertionMiddleware(RequestMiddlewareBase):
    """Adds a freshly signed `client_assertion` form field to each attempt."""

    def __init__(
        self,
        signing_key: jwk.JWK,
        client_assertion_header: Dict[str, Any],
        client_assertion_claims: Dict[str, Any],
    ) -> None:
        super().__init__()
        self._signing_key = signing_key
        self._client_assertion_header = client_assertion_header
        self._client_assertion_claims = client_assertion_claims

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        if request.kwargs is None:
            request.kwargs = {}

        self._client_assertion_claims["jti"] = secrets.token_urlsafe(32)
        claims_assertion = jwt.JWT(
            header=self._client_assertion_header,
            claims=self._client_assertion_claims,
        )
        claims_assertion.make_signed_token(self._signing_key)

        # A plain dict is re-encoded by aiohttp on every attempt, unlike FormData.
        data = dict(request.kwargs.get("data", None) or {})
        data["client_assertion"] = claims_assertion.serialize()
        request.kwargs["data"] = data

        return await next(request)


class GenerateDpopMiddleware(RequestMiddlewareBase):
    """Signs a DPoP proof for each attempt and retries once the server hands out a nonce."""

    def __init__(
        self,
        dpop_key: jwk.JWK,
        dpop_assertion_header: Dict[str, Any],
        dpop_assertion_claims: Dict[str, Any],
    ) -> None:
        super().__init__()
        self._dpop_key = dpop_key
        self._dpop_assertion_header = dpop_assertion_header
        self._dpop_assertion_claims = dpop_assertion_claims

    @property
    def nonce(self) -> Optional[str]:
        return self._dpop_assertion_claims.get("nonce", None)

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        self._dpop_assertion_claims["jti"] = secrets.token_urlsafe(32)

        dpop_assertion = jwt.JWT(
            header=self._dpop_assertion_header,
            claims=self._dpop_assertion_claims,
        )
        dpop_assertion.make_signed_token(self._dpop_key)

        if request.headers is None:
            request.headers = {}
        request.headers["DPoP"] = dpop_assertion.serialize()

        response = await next(request)
        client_response = response[0]
        chain_response = response[1]
        new_request = None
        if len(response) == 3:
            new_request = response[2]

        if chain_response.status in (400, 401) and chain_response.error_code() in (
            "use_dpop_nonce",
            "invalid_dpop_proof",
        ):
            nonce = chain_response.headers.get("DPoP-Nonce", None)
            if nonce is not None and nonce != self.nonce:
                logger.debug("retrying %s with new DPoP nonce", request.url)
                self._dpop_assertion_claims["nonce"] = nonce
                if new_request is None:
                    new_request = ChainRequest.from_chain_request(request)

        if new_request is None:
            return client_response, chain_response
        return client_response, chain_response, new_request


class EndOfLineChainMiddleware:
    def __init__(
        self,
        request_func: RequestFunc,
        raise_for_status: bool = False,
    ) -> None:
        super().__init__()
        self._request_func = request_func
        self._raise_for_status = raise_for_status

    async def handle(self, request: ChainRequest) -> NextChainResponseCallbackType:
        logger.debug("Making request: %s %s", request.method, request.url)

        response: ClientResponse = await self._request_func(
            request.method.lower(),
            request.url,
            headers=request.headers,
            **(request.kwargs or {}),
        )

        if self._raise_for_status:
            response.raise_for_status()

        return response, await ChainResponse.from_aiohttp_response(response)


class ChainMiddlewareContext:
    def __init__(
        self,
        chain_callback: NextChainCallbackType,
        chain_request: ChainRequest,
        attempt_max: int = 3,
    ) -> None:
        self._chain_callback = chain_callback
        self._chain_request = chain_request
        self._attempt_max = attempt_max
        self.client_response: ClientResponse | None = None

    async def _do_request(self) -> Tuple[ClientResponse, ChainResponse]:
        current_attempt = 0
        chain_request = self._chain_request

        while True:
            current_attempt += 1
            if current_attempt > self._attempt_max:
                raise Exception("Max attempts reached")

            response = await self._chain_callback(chain_request)
            client_response = response[0]
            chain_response = response[1]

            if self.client_response is not None and not self.client_response.closed:
                self.client_response.close()
            self.client_response = client_response

            if len(response) == 2:
                return client_response, chain_response

            chain_request = response[2]

    def __await__(self) -> Generator[Any, None, Tuple[ClientResponse, ChainResponse]]:
        return self.__aenter__().__await__()

    async def __aenter__(self) -> Tuple[ClientResponse, ChainResponse]:
        return await self._do_request()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self.client_response is not None and not self.client_response.closed:
            self.client_response.close()


class ChainMiddlewareClient:
    """Runs each request through a middleware chain ending in a shared ClientSession."""

    def __init__(
        self,
        client_session: ClientSession,
        middleware: Sequence[RequestMiddlewareBase] | None = None,
        raise_for_status: bool = False,
    ) -> None:
        self._client = client_session
        self._middleware = middleware
        self._raise_for_status = raise_for_status

    def request(self, method: str, url: StrOrURL, **kwargs: Any) -> ChainMiddlewareContext:
        return self._make_request(method=method, url=url, **kwargs)

    def get(self, url: StrOrURL, **kwargs: Any) -> ChainMiddlewareContext:
        return self._make_request(method=hdrs.METH_GET, url=url, **kwargs)

    def post(self, url: StrOrURL, **kwargs: Any) -> ChainMiddlewareContext:
        return self._make_request(method=hdrs.METH_POST, url=url, **kwargs)

    def _make_request(
        self,
        method: str,
        url: StrOrURL,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        chain_request = ChainRequest(
            method=method,
            url=url,
            headers=kwargs.pop("headers", {}),
            kwargs=kwargs,
        )

        end_of_line_middleware = EndOfLineChainMiddleware(
            request_func=self._client.request,
            raise_for_status=self._raise_for_status,
        )

        chain_callback: NextChainCallbackType = end_of_line_middleware.handle

        for mw in reversed(self._middleware or []):
            chain_callback = mw.handle_gen(chain_callback)

        return ChainMiddlewareContext(
            chain_callback=chain_callback,
            chain_request=chain_request,
        )
