from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import aiohttp
from eth_account import Account
from eth_utils import to_checksum_address

from resolver.common import log_event

from .protocol import decode_uint256, encode_allowance, encode_balance_of


class RpcMethodError(RuntimeError):
    def __init__(
        self,
        *,
        method: str,
        message: str,
        code: int | None = None,
        data: Any = None,
    ) -> None:
        super().__init__(f"RPC error for {method}: code={code} message={message}")
        self.method = method
        self.rpc_message = message
        self.code = code
        self.data = data

    @property
    def revert_data(self) -> bytes:
        raw = self.data
        if isinstance(raw, dict):
            raw = raw.get("data")
        if not isinstance(raw, str) or not raw.startswith("0x"):
            return b""
        try:
            return bytes.fromhex(raw[2:])
        except ValueError:
            return b""

    @property
    def is_execution_revert(self) -> bool:
        return self.code == 3 or "revert" in self.rpc_message.lower()

    @property
    def is_insufficient_funds(self) -> bool:
        return "insufficient funds" in self.rpc_message.lower()


class TransactionPendingConfirmationError(RuntimeError):
    def __init__(self, tx_hash: str, timeout_seconds: float) -> None:
        super().__init__(f"Transaction {tx_hash} was not confirmed within {timeout_seconds:.1f}s")
        self.tx_hash = tx_hash
        self.timeout_seconds = timeout_seconds


@dataclass(slots=True, frozen=True)
class GasParams:
    gas_limit: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int


@dataclass(slots=True, frozen=True)
class TransactionReceipt:
    transaction_hash: str
    status: int
    block_number: int
    gas_used: int
    effective_gas_price: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


def _quantity(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    raise RuntimeError(f"Unexpected JSON-RPC quantity: {value}")


def _hex_data(value: bytes) -> str:
    return f"0x{value.hex()}"


class ChainClient:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc_url: str,
        private_key: str,
        chain_id: int,
        timeout_seconds: float = 10.0,
        confirm_poll_interval_seconds: float = 2.0,
    ) -> None:
        if not rpc_url:
            raise ValueError("RPC_URL is required.")
        if not private_key:
            raise ValueError("RESOLVER_PRIVATE_KEY is required.")

        self._logger = logger
        self._rpc_url = rpc_url
        self._chain_id = chain_id
        self._timeout_seconds = timeout_seconds
        self._confirm_poll_interval_seconds = confirm_poll_interval_seconds
        self._account = Account.from_key(private_key)
        self._http_session: aiohttp.ClientSession | None = None
        self._request_id = 0

    @property
    def address(self) -> str:
        return self._account.address

    @property
    def chain_id(self) -> int:
        return self._chain_id

    async def connect(self) -> None:
        if self._http_session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._http_session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    async def healthcheck(self) -> None:
        remote_chain_id = _quantity(await self._rpc_call("eth_chainId"))
        if remote_chain_id != self._chain_id:
            raise RuntimeError(
                f"RPC endpoint serves chain {remote_chain_id}, expected {self._chain_id}"
            )

    async def _rpc_call(self, method: str, params: list[Any] | None = None) -> Any:
        if self._http_session is None:
            await self.connect()
        if self._http_session is None:
            raise RuntimeError("RPC HTTP session is not initialized.")

        self._request_id += 1
        payload: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        async with self._http_session.post(self._rpc_url, json=payload) as response:
            body = await response.json(content_type=None)
            if response.status >= 400:
                raise RuntimeError(f"RPC call failed: method={method} status={response.status} body={body}")

        if not isinstance(body, dict):
            raise RuntimeError(f"Invalid RPC response for {method}: {body}")

        error = body.get("error")
        if error:
            if isinstance(error, dict):
                raise RpcMethodError(
                    method=method,
                    message=str(error.get("message", "")),
                    code=error.get("code") if isinstance(error.get("code"), int) else None,
                    data=error.get("data"),
                )
            raise RpcMethodError(method=method, message=str(error))

        return body.get("result")

    async def get_balance(self, address: str | None = None) -> int:
        result = await self._rpc_call("eth_getBalance", [address or self.address, "latest"])
        return _quantity(result)

    async def call(
        self,
        contract_address: str,
        call_data: bytes,
        *,
        from_address: str | None = None,
        gas: int | None = None,
    ) -> bytes:
        request: dict[str, Any] = {
            "from": from_address or self.address,
            "to": to_checksum_address(contract_address),
            "data": _hex_data(call_data),
        }
        if gas is not None:
            request["gas"] = hex(gas)

        result = await self._rpc_call("eth_call", [request, "latest"])
        if not isinstance(result, str) or not result.startswith("0x"):
            raise RuntimeError(f"Unexpected eth_call response: {result}")
        return bytes.fromhex(result[2:])

    async def submit(self, contract_address: str, call_data: bytes, gas: GasParams) -> str:
        nonce = _quantity(await self._rpc_call("eth_getTransactionCount", [self.address, "pending"]))
        transaction = {
            "type": 2,
            "chainId": self._chain_id,
            "nonce": nonce,
            "to": to_checksum_address(contract_address),
            "value": 0,
            "data": call_data,
            "gas": gas.gas_limit,
            "maxFeePerGas": gas.max_fee_per_gas,
            "maxPriorityFeePerGas": gas.max_priority_fee_per_gas,
        }
        signed = self._account.sign_transaction(transaction)
        tx_hash = await self._rpc_call("eth_sendRawTransaction", [_hex_data(bytes(signed.raw_transaction))])
        if not isinstance(tx_hash, str) or not tx_hash:
            raise RuntimeError(f"Unexpected eth_sendRawTransaction response: {tx_hash}")

        log_event(
            self._logger,
            level="info",
            event="transaction_submitted",
            message="Transaction submitted",
            tx_hash=tx_hash,
            nonce=nonce,
            to=transaction["to"],
            gas_limit=gas.gas_limit,
            max_fee_per_gas=gas.max_fee_per_gas,
        )
        return tx_hash

    async def get_transaction_receipt(self, tx_hash: str) -> TransactionReceipt | None:
        result = await self._rpc_call("eth_getTransactionReceipt", [tx_hash])
        if result is None:
            return None
        if not isinstance(result, dict):
            raise RuntimeError(f"Unexpected eth_getTransactionReceipt response: {result}")

        effective_gas_price = result.get("effectiveGasPrice")
        return TransactionReceipt(
            transaction_hash=str(result.get("transactionHash") or tx_hash),
            status=_quantity(result.get("status", "0x0")),
            block_number=_quantity(result.get("blockNumber", "0x0")),
            gas_used=_quantity(result.get("gasUsed", "0x0")),
            effective_gas_price=_quantity(effective_gas_price) if effective_gas_price is not None else None,
        )

    async def wait_for_confirmation(self, tx_hash: str, timeout_seconds: float) -> TransactionReceipt:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, timeout_seconds)

        while True:
            try:
                receipt = await self.get_transaction_receipt(tx_hash)
            except (aiohttp.ClientError, asyncio.TimeoutError, RuntimeError, ValueError) as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="receipt_poll_failed",
                    message="Receipt poll failed; retrying until the confirmation deadline",
                    tx_hash=tx_hash,
                    error=str(error),
                )
                receipt = None

            if receipt is not None:
                return receipt

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise TransactionPendingConfirmationError(tx_hash, timeout_seconds)
            await asyncio.sleep(min(self._confirm_poll_interval_seconds, remaining))

    async def get_block_timestamp(self, block_number: int) -> datetime:
        result = await self._rpc_call("eth_getBlockByNumber", [hex(block_number), False])
        if not isinstance(result, dict) or "timestamp" not in result:
            raise RuntimeError(f"Unexpected eth_getBlockByNumber response: {result}")
        return datetime.fromtimestamp(_quantity(result["timestamp"]), tz=timezone.utc)

    async def erc20_balance_of(self, token: str, owner: str | None = None) -> int:
        data = await self.call(token, encode_balance_of(owner or self.address))
        return decode_uint256(data)

    async def erc20_allowance(self, token: str, spender: str, owner: str | None = None) -> int:
        data = await self.call(token, encode_allowance(owner or self.address, spender))
        return decode_uint256(data)
