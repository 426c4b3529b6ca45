from __future__ import annotations

import base64
import binascii
import itertools
import logging
import ssl
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from chainmirror.domain.events import TransactionRecord
from chainmirror.security.redaction import redact_url
from chainmirror.services.retry import RetryAttempt, retry_with_backoff

logger = logging.getLogger(__name__)

MAX_RPC_BATCH_SIZE = 100
MAX_MULTIPLE_ACCOUNTS = 100
_TRANSIENT_RPC_CODES = {-32005, -32603, -32004, -32014}
_RETRY_JITTER_SEED = 23


class RpcError(Exception):
    def __init__(self, message: str, *, code: int | None = None, method: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.method = method


class RpcTransientError(RpcError):
    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        method: str | None = None,
        retry_after: str | None = None,
    ) -> None:
        super().__init__(message, code=code, method=method)
        self.retry_after = retry_after


@dataclass(frozen=True)
class SignatureInfo:
    signature: str
    slot: int
    err: object | None = None
    block_time: int | None = None


@dataclass(frozen=True)
class AccountsSnapshot:
    context_slot: int
    accounts: list[bytes | None]


def _is_permanent_transport_error(exc: httpx.TransportError) -> bool:
    permanent_errors = (
        httpx.UnsupportedProtocol,
        httpx.ProtocolError,
        httpx.LocalProtocolError,
    )
    if isinstance(exc, permanent_errors):
        return True
    cause = getattr(exc, "__cause__", None)
    return isinstance(cause, ssl.SSLCertVerificationError)


def _error_from_payload(error: object, *, method: str) -> RpcError:
    if not isinstance(error, dict):
        return RpcError(f"malformed JSON-RPC error for {method}: {error!r}", method=method)
    code = error.get("code")
    message = str(error.get("message") or "unknown JSON-RPC error")
    code_int = int(code) if isinstance(code, int) else None
    if code_int in _TRANSIENT_RPC_CODES:
        return RpcTransientError(message, code=code_int, method=method)
    return RpcError(message, code=code_int, method=method)


def _parse_transaction(signature: str, result: object) -> TransactionRecord | None:
    if result is None:
        return None
    if not isinstance(result, dict):
        raise RpcError(f"malformed getTransaction result for {signature}", method="getTransaction")
    meta = result.get("meta") or {}
    logs = meta.get("logMessages") or []
    block_time = result.get("blockTime")
    return TransactionRecord(
        signature=signature,
        slot=int(result.get("slot") or 0),
        block_time=int(block_time) if block_time is not None else None,
        log_messages=tuple(str(line) for line in logs),
        err=meta.get("err"),
    )


class SolanaRpcClient:
    def __init__(
        self,
        url: str,
        *,
        commitment: str = "confirmed",
        timeout: float | httpx.Timeout = 30.0,
        max_attempts: int = 3,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 8000,
        max_batch_size: int = MAX_RPC_BATCH_SIZE,
        transport: httpx.BaseTransport | None = None,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        self.url = url
        self.commitment = commitment
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.max_batch_size = max(1, min(max_batch_size, MAX_RPC_BATCH_SIZE))
        resolved_timeout = (
            timeout
            if isinstance(timeout, httpx.Timeout)
            else httpx.Timeout(timeout=timeout, connect=min(10.0, timeout))
        )
        self.client = httpx.Client(
            timeout=resolved_timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )
        self._sleep_fn = sleep_fn
        self._ids = itertools.count(1)
        self._ids_lock = threading.Lock()

    def __enter__(self) -> SolanaRpcClient:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        del exc_type, exc, tb
        self.close()

    def close(self) -> None:
        self.client.close()

    def _next_id(self) -> int:
        with self._ids_lock:
            return next(self._ids)

    def _post(self, body: object, *, method: str) -> Any:
        def _call() -> Any:
            try:
                response = self.client.post(self.url, json=body)
            except httpx.TimeoutException as exc:
                raise RpcTransientError(f"{method} timed out", method=method) from exc
            except httpx.TransportError as exc:
                if _is_permanent_transport_error(exc):
                    raise RpcError(f"{method} transport failure: {exc}", method=method) from exc
                raise RpcTransientError(f"{method} transport failure: {exc}", method=method) from exc

            if response.status_code == 429 or response.status_code >= 500:
                raise RpcTransientError(
                    f"{method} returned HTTP {response.status_code}",
                    code=response.status_code,
                    method=method,
                    retry_after=response.headers.get("Retry-After"),
                )
            if response.status_code >= 400:
                raise RpcError(
                    f"{method} returned HTTP {response.status_code}",
                    code=response.status_code,
                    method=method,
                )
            try:
                return response.json()
            except ValueError as exc:
                raise RpcError(f"{method} returned a non-JSON body", method=method) from exc

        def _retry_after(exc: Exception) -> str | None:
            return getattr(exc, "retry_after", None)

        def _on_retry(attempt: RetryAttempt) -> None:
            logger.warning(
                "rpc_retry",
                extra={
                    "extra": {
                        "method": method,
                        "endpoint": redact_url(self.url),
                        "attempt": attempt.attempt,
                        "max_attempts": self.max_attempts,
                        "delay_ms": attempt.delay_ms,
                        "error_type": attempt.error_type,
                        "used_retry_after": attempt.used_retry_after,
                    }
                },
            )

        return retry_with_backoff(
            lambda: self._unwrap(_call(), method=method),
            max_attempts=self.max_attempts,
            base_delay_ms=self.base_delay_ms,
            max_delay_ms=self.max_delay_ms,
            jitter_seed=_RETRY_JITTER_SEED,
            retry_on_exceptions=(RpcTransientError,),
            retry_after_getter=_retry_after,
            on_retry=_on_retry,
            sleep_fn=self._sleep_fn,
        )

    @staticmethod
    def _unwrap(payload: Any, *, method: str) -> Any:
        if isinstance(payload, list):
            for item in payload:
                if isinstance(item, dict) and item.get("error") is not None:
                    error = _error_from_payload(item["error"], method=method)
                    if isinstance(error, RpcTransientError):
                        raise error
            return payload
        if not isinstance(payload, dict):
            raise RpcError(f"{method} returned a malformed payload", method=method)
        if payload.get("error") is not None:
            raise _error_from_payload(payload["error"], method=method)
        return payload

    def call(self, method: str, params: list[Any] | None = None) -> Any:
        body = {"jsonrpc": "2.0", "id": self._next_id(), "method": method, "params": params or []}
        payload = self._post(body, method=method)
        if "result" not in payload:
            raise RpcError(f"{method} response has no result", method=method)
        return payload["result"]

    def get_slot(self) -> int:
        return int(self.call("getSlot", [{"commitment": self.commitment}]))

    def get_signatures_for_address(
        self,
        address: str,
        *,
        limit: int = 1000,
        before: str | None = None,
        until: str | None = None,
    ) -> list[SignatureInfo]:
        options: dict[str, Any] = {"limit": limit, "commitment": self.commitment}
        if before is not None:
            options["before"] = before
        if until is not None:
            options["until"] = until
        result = self.call("getSignaturesForAddress", [address, options])
        if not isinstance(result, list):
            raise RpcError("getSignaturesForAddress returned a non-list result", method="getSignaturesForAddress")
        infos: list[SignatureInfo] = []
        for item in result:
            block_time = item.get("blockTime")
            infos.append(
                SignatureInfo(
                    signature=str(item["signature"]),
                    slot=int(item["slot"]),
                    err=item.get("err"),
                    block_time=int(block_time) if block_time is not None else None,
                )
            )
        return infos

    def get_transactions(self, signatures: Sequence[str]) -> list[TransactionRecord | None]:
        """Fetch transactions with one JSON-RPC batch per ``max_batch_size`` signatures."""
        records: list[TransactionRecord | None] = []
        for start in range(0, len(signatures), self.max_batch_size):
            chunk = list(signatures[start : start + self.max_batch_size])
            records.extend(self._get_transaction_batch(chunk))
        return records

    def _get_transaction_batch(self, signatures: list[str]) -> list[TransactionRecord | None]:
        if not signatures:
            return []
        options = {
            "encoding": "json",
            "commitment": self.commitment,
            "maxSupportedTransactionVersion": 0,
        }
        requests = [
            {"jsonrpc": "2.0", "id": self._next_id(), "method": "getTransaction", "params": [sig, options]}
            for sig in signatures
        ]
        payload = self._post(requests, method="getTransaction")
        if not isinstance(payload, list):
            raise RpcError("getTransaction batch returned a non-list payload", method="getTransaction")
        by_id = {item.get("id"): item for item in payload if isinstance(item, dict)}
        records: list[TransactionRecord | None] = []
        for request, signature in zip(requests, signatures, strict=True):
            item = by_id.get(request["id"])
            if item is None:
                raise RpcError(f"getTransaction batch is missing a response for {signature}", method="getTransaction")
            if item.get("error") is not None:
                raise _error_from_payload(item["error"], method="getTransaction")
            records.append(_parse_transaction(signature, item.get("result")))
        return records

    def get_multiple_accounts(self, addresses: Sequence[str]) -> AccountsSnapshot:
        context_slot = 0
        accounts: list[bytes | None] = []
        for start in range(0, len(addresses), MAX_MULTIPLE_ACCOUNTS):
            chunk = list(addresses[start : start + MAX_MULTIPLE_ACCOUNTS])
            result = self.call(
                "getMultipleAccounts",
                [chunk, {"encoding": "base64", "commitment": self.commitment}],
            )
            context_slot = max(context_slot, int((result.get("context") or {}).get("slot") or 0))
            values = result.get("value") or []
            if len(values) != len(chunk):
                raise RpcError("getMultipleAccounts returned a mismatched account list", method="getMultipleAccounts")
            for value in values:
                accounts.append(_account_data(value))
        return AccountsSnapshot(context_slot=context_slot, accounts=accounts)


def _account_data(value: object) -> bytes | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise RpcError("malformed account entry", method="getMultipleAccounts")
    data = value.get("data")
    if isinstance(data, list) and data:
        data = data[0]
    if not isinstance(data, str):
        raise RpcError("account data is not base64 encoded", method="getMultipleAccounts")
    try:
        return base64.b64decode(data)
    except (binascii.Error, ValueError) as exc:
        raise RpcError("account data is not valid base64", method="getMultipleAccounts") from exc
