"""JSON-RPC transports for EVM nodes.

Two transports share the same Ethereum helpers: ``JsonRpcTransport`` posts
over HTTP(S) with httpx, ``WebSocketJsonRpcTransport`` keeps one websocket
open and matches responses to requests by id. ``make_transport`` picks one
from the URL scheme.

``sign_and_send`` behaves like a wallet client: any field the request leaves
empty (chain id, nonce, gas limit, fees) is filled from the node before the
transaction is signed locally and broadcast with ``eth_sendRawTransaction``.
"""

import asyncio
import itertools
import json
import logging
from typing import Any, Protocol

import httpx
import websockets
from eth_utils import to_hex

import inscriber.constants as C
from inscriber.errors import ExecutionRejectedError, RPCError, TransportError, ValidationError
from inscriber.models import SignerAccount, TransactionRequest

log = logging.getLogger("inscriber.rpc")


class ChainTransport(Protocol):
    async def get_transaction_count(self, address: str, block: str = "latest") -> int: ...
    async def sign_and_send(self, account: SignerAccount, request: TransactionRequest) -> str: ...
    async def close(self) -> None: ...


def _to_int(value: Any) -> int:
    return int(value, 16) if isinstance(value, str) else int(value)


class _EthRpc:
    def __init__(self, url: str, *, chain_id: int | None = None, timeout: float = C.RPC_TIMEOUT) -> None:
        self.url = url
        self.timeout = timeout
        self._chain_id = chain_id
        self._ids = itertools.count(1)

    async def _send(self, payload: dict) -> Any:
        raise NotImplementedError

    async def close(self) -> None:
        pass

    async def request(self, method: str, params: list | None = None) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        resp = await self._send(payload)
        if not isinstance(resp, dict):
            raise TransportError(f"Malformed response to {method}: {resp!r}")
        err = resp.get("error")
        if err is not None:
            if isinstance(err, dict):
                raise RPCError(str(err.get("message", "")), code=err.get("code"))
            raise RPCError(str(err))
        if "result" not in resp:
            raise TransportError(f"Response to {method} has neither result nor error")
        return resp["result"]

    async def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = _to_int(await self.request("eth_chainId"))
        return self._chain_id

    async def get_transaction_count(self, address: str, block: str = "latest") -> int:
        return _to_int(await self.request("eth_getTransactionCount", [address, block]))

    async def _fee_fields(self, request: TransactionRequest) -> dict[str, int]:
        if request.gas_price is not None:
            return {"gasPrice": request.gas_price}

        block = await self.request("eth_getBlockByNumber", ["latest", False])
        base_fee = (block or {}).get("baseFeePerGas")
        if base_fee is None:
            # Pre-London chain: no base fee, fold any tip into a legacy gasPrice
            gas_price = _to_int(await self.request("eth_gasPrice"))
            return {"gasPrice": gas_price + (request.max_priority_fee_per_gas or 0)}

        base = _to_int(base_fee)
        tip = request.max_priority_fee_per_gas
        if tip is None:
            try:
                tip = _to_int(await self.request("eth_maxPriorityFeePerGas"))
            except RPCError:
                tip = max(_to_int(await self.request("eth_gasPrice")) - base, 0)
        return {
            "type": 2,
            "maxFeePerGas": int(base * C.BASE_FEE_MULTIPLIER) + tip,
            "maxPriorityFeePerGas": tip,
        }

    async def sign_and_send(self, account: SignerAccount, request: TransactionRequest) -> str:
        """Fill defaults, sign locally, broadcast. Returns the transaction hash.

        Raises:
            ExecutionRejectedError: the node answered any step with an error object.
            TransportError: the node could not be reached or answered garbage.
        """
        data = to_hex(request.data)
        tx: dict[str, Any] = {"to": request.to, "value": request.value, "data": data}
        try:
            tx["chainId"] = await self.chain_id()
            if request.nonce is not None:
                tx["nonce"] = request.nonce
            else:
                tx["nonce"] = await self.get_transaction_count(account.address, "pending")
            tx.update(await self._fee_fields(request))
            call = {"from": account.address, "to": request.to, "value": hex(request.value), "data": data}
            tx["gas"] = _to_int(await self.request("eth_estimateGas", [call]))

            signed = account.sign_transaction(tx)
            tx_hash = await self.request("eth_sendRawTransaction", [to_hex(signed.raw_transaction)])
        except ExecutionRejectedError:
            raise
        except RPCError as e:
            raise ExecutionRejectedError(e.message, code=e.code) from e
        log.debug("sent %s nonce=%s hash=%s", account.address, tx["nonce"], tx_hash)
        return tx_hash


class JsonRpcTransport(_EthRpc):
    def __init__(
        self,
        url: str,
        *,
        chain_id: int | None = None,
        timeout: float = C.RPC_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(url, chain_id=chain_id, timeout=timeout)
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def _send(self, payload: dict) -> Any:
        try:
            r = await self._client.post(self.url, json=payload)
        except httpx.HTTPError as e:
            raise TransportError(f"{e.__class__.__name__}: {e}") from e

        try:
            body = r.json()
        except ValueError:
            body = None
        if r.is_error:
            # some nodes pair a 4xx with a regular JSON-RPC error body
            if isinstance(body, dict) and "error" in body:
                return body
            raise TransportError(f"HTTP {r.status_code} from {self.url}", status_code=r.status_code)
        if body is None:
            raise TransportError(f"Malformed JSON from {self.url}", status_code=r.status_code)
        return body

    async def close(self) -> None:
        await self._client.aclose()


class WebSocketJsonRpcTransport(_EthRpc):
    def __init__(self, url: str, *, chain_id: int | None = None, timeout: float = C.RPC_TIMEOUT) -> None:
        super().__init__(url, chain_id=chain_id, timeout=timeout)
        self._ws = None
        self._reader: asyncio.Task | None = None
        self._connect_lock = asyncio.Lock()
        self._pending: dict[int, asyncio.Future] = {}

    async def _connection(self):
        async with self._connect_lock:
            if self._ws is None:
                try:
                    self._ws = await websockets.connect(
                        self.url,
                        ping_interval=20,
                        ping_timeout=20,
                        close_timeout=1,
                    )
                except (websockets.exceptions.WebSocketException, OSError) as e:
                    raise TransportError(f"WS connect to {self.url} failed: {e}") from e
                log.info("WS connected: %s", self.url)
                self._reader = asyncio.create_task(self._read_loop(self._ws), name="rpc_ws_reader")
            return self._ws

    async def _read_loop(self, ws) -> None:
        reason = "websocket closed"
        try:
            async for raw in ws:
                try:
                    msg = json.loads(raw)
                except ValueError:
                    log.warning("Dropping non-JSON WS frame: %.80s", raw)
                    continue
                if not isinstance(msg, dict):
                    continue
                fut = self._pending.pop(msg.get("id"), None)
                if fut is not None and not fut.done():
                    fut.set_result(msg)
        except websockets.exceptions.ConnectionClosed as e:
            reason = f"websocket closed: {e}"
            log.warning("WS connection lost: %s", e)
        finally:
            if self._ws is ws:
                self._ws = None
            for fut in self._pending.values():
                if not fut.done():
                    fut.set_exception(TransportError(reason))
            self._pending.clear()

    async def _send(self, payload: dict) -> Any:
        ws = await self._connection()
        fut = asyncio.get_running_loop().create_future()
        self._pending[payload["id"]] = fut
        try:
            await ws.send(json.dumps(payload))
            return await asyncio.wait_for(fut, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(f"Timed out waiting for {payload['method']}") from e
        except (websockets.exceptions.WebSocketException, OSError) as e:
            raise TransportError(f"{e.__class__.__name__}: {e}") from e
        finally:
            self._pending.pop(payload["id"], None)

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
        if self._ws is not None:
            await self._ws.close()
            self._ws = None


def make_transport(url: str, *, chain_id: int | None = None, timeout: float = C.RPC_TIMEOUT) -> ChainTransport:
    if not url:
        raise ValidationError("No RPC URL configured")
    if url.startswith(("ws://", "wss://")):
        return WebSocketJsonRpcTransport(url, chain_id=chain_id, timeout=timeout)
    return JsonRpcTransport(url, chain_id=chain_id, timeout=timeout)
