"""
Session - one explicit handle wiring the RPC client, planner, builder,
confirmation and subscriptions together.

Every component takes its collaborators in the constructor; several
sessions against different nodes can coexist in one process.
"""

from __future__ import annotations

import threading
from typing import Any, Iterable, Optional, Sequence, Union

from .config import Config
from .errors import ConfigError, InsufficientFunds, NonceConflict, RpcApplicationError
from .logging import get_logger
from .pneuma.abi import EventRegistry, EventSchema, FunctionSchema, TypeSpec, encode_args, encode_call
from .pneuma.confirm import DEFAULT_POLL_INTERVAL, ConfirmationResult, Submission, TxState
from .pneuma.models import Account, Receipt, SignedTx
from .pneuma.planner import Planner
from .pneuma.rpc import RpcClient
from .pneuma.sources import HEADS, LOGS, LogFilter, PollingSource, StreamSource, WebSocketSource
from .pneuma.subscribe import Backpressure, Subscription
from .pneuma.tx import TransactionBuilder, sign_transaction
from .utils import from_data, normalize_address, to_data

logger = get_logger("session")


class Session:
    """
    Args:
        rpc: RPC client for this session
        planner: Fee & nonce planner (built from ``rpc`` when omitted)
        builder: Transaction builder (built from ``rpc`` when omitted)
        expected_chain_id: When set, the node's chain id must match
        ws_url: Websocket endpoint for push subscriptions; polling otherwise
        poll_interval: Receipt and log poll interval in seconds
        receipt_timeout: Default confirmation deadline in seconds
    """

    def __init__(
        self,
        rpc: RpcClient,
        planner: Optional[Planner] = None,
        builder: Optional[TransactionBuilder] = None,
        expected_chain_id: Optional[int] = None,
        ws_url: Optional[str] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        receipt_timeout: Optional[float] = 120.0,
    ) -> None:
        self.rpc = rpc
        self.planner = planner or Planner(rpc)
        self.builder = builder or TransactionBuilder(rpc)
        self.expected_chain_id = expected_chain_id
        self.ws_url = ws_url
        self.poll_interval = poll_interval
        self.receipt_timeout = receipt_timeout
        self._chain_id: Optional[int] = None
        self._chain_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Config, **kwargs: Any) -> "Session":
        rpc = RpcClient.from_config(config)
        return cls(
            rpc,
            planner=Planner(rpc, legacy=config.legacy_pricing, default_max_fee=config.max_fee_per_gas),
            builder=TransactionBuilder(rpc, gas_safety_factor=config.gas_safety_factor),
            expected_chain_id=config.chain_id,
            ws_url=config.ws_url,
            poll_interval=config.poll_interval,
            receipt_timeout=config.receipt_timeout,
            **kwargs,
        )

    def close(self) -> None:
        self.rpc.close()

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def chain_id(self) -> int:
        """Node chain id, fetched once and checked against the configured one."""
        with self._chain_lock:
            if self._chain_id is None:
                chain_id = self.rpc.chain_id()
                if self.expected_chain_id is not None and chain_id != self.expected_chain_id:
                    raise ConfigError(
                        f"Node chain id {chain_id} does not match configured {self.expected_chain_id}"
                    )
                self._chain_id = chain_id
            return self._chain_id

    # ============ Write path ============

    def prepare(
        self,
        account: Account,
        to: Optional[str],
        value: int = 0,
        data: Union[bytes, str] = b"",
        gas_limit: Optional[int] = None,
    ) -> SignedTx:
        """
        Plan, build, fund-check and sign a transaction without sending it.

        The planned nonce is released if any step fails.
        """
        chain_id = self.chain_id
        plan = self.planner.plan(account, value)
        try:
            unsigned = self.builder.build(plan, to, value=value, data=data, gas_limit=gas_limit)
            self.planner.ensure_funds(account, value, plan.fee, unsigned.gas)
            return sign_transaction(unsigned, account, chain_id)
        except Exception:
            self.planner.release(account, plan.nonce)
            raise

    def submit(
        self,
        account: Account,
        signed: SignedTx,
        wait: bool = True,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ConfirmationResult:
        """
        Broadcast ``signed`` once and optionally wait for its receipt.

        On NonceConflict the account's local nonce state is reset so the
        next ``prepare`` re-reads the node; the error still propagates.
        """
        submission = Submission(self.rpc, signed, poll_interval=self.poll_interval)
        try:
            submission.broadcast()
        except NonceConflict:
            self.planner.reset(account)
            raise
        except (InsufficientFunds, RpcApplicationError):
            self.planner.release(account, signed.unsigned.nonce)
            raise

        if not wait:
            return ConfirmationResult(tx_hash=signed.hash, state=TxState.BROADCAST)
        return submission.wait(timeout=timeout if timeout is not None else self.receipt_timeout, cancel=cancel)

    def send(
        self,
        account: Account,
        to: Optional[str],
        value: int = 0,
        data: Union[bytes, str] = b"",
        gas_limit: Optional[int] = None,
        wait: bool = True,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ConfirmationResult:
        """Prepare and submit a transaction."""
        signed = self.prepare(account, to, value=value, data=data, gas_limit=gas_limit)
        return self.submit(account, signed, wait=wait, timeout=timeout, cancel=cancel)

    def transact(
        self,
        account: Account,
        to: str,
        signature: Union[str, FunctionSchema],
        args: Sequence[Any] = (),
        value: int = 0,
        **kwargs: Any,
    ) -> ConfirmationResult:
        """Call a contract function in a transaction."""
        return self.send(account, to, value=value, data=encode_call(signature, args), **kwargs)

    def deploy(
        self,
        account: Account,
        init_code: Union[bytes, str],
        constructor_types: Sequence[TypeSpec] = (),
        constructor_args: Sequence[Any] = (),
        **kwargs: Any,
    ) -> ConfirmationResult:
        """Deploy a contract; the result exposes ``contract_address``."""
        data = from_data(init_code) + encode_args(constructor_types, constructor_args)
        return self.send(account, None, data=data, **kwargs)

    # ============ Read path ============

    def read(
        self,
        to: str,
        signature: Union[str, FunctionSchema],
        args: Sequence[Any] = (),
        returns: Sequence[TypeSpec] = (),
        block: Union[int, str] = "latest",
    ) -> tuple:
        """Read-only contract call, decoded against ``returns``."""
        schema = (
            signature
            if isinstance(signature, FunctionSchema)
            else FunctionSchema.parse(signature, returns=returns)
        )
        data = self.rpc.call({"to": normalize_address(to), "data": to_data(schema.encode(args))}, block)
        return schema.decode_output(data)

    def balance(self, address: str) -> int:
        return self.rpc.get_balance(normalize_address(address))

    def receipt(self, tx_hash: str) -> Optional[Receipt]:
        payload = self.rpc.get_transaction_receipt(tx_hash)
        return Receipt.from_rpc(payload) if payload is not None else None

    # ============ Subscriptions ============

    def _source(self, kind: str, log_filter: Optional[LogFilter] = None) -> StreamSource:
        if self.ws_url:
            return WebSocketSource(self.ws_url, self.rpc, kind=kind, log_filter=log_filter)
        return PollingSource(self.rpc, kind=kind, log_filter=log_filter, poll_interval=self.poll_interval)

    def subscribe_logs(
        self,
        addresses: Union[str, Sequence[str]] = (),
        events: Iterable[Union[str, EventSchema]] = (),
        topic0: Optional[bytes] = None,
        start_block: Optional[int] = None,
        queue_size: int = 1024,
        backpressure: Backpressure = Backpressure.BLOCK,
        max_reconnects: int = 5,
        reconnect_delay: float = 1.0,
    ) -> Subscription:
        """
        Start a log subscription.

        Logs are decoded against ``events``; logs whose topic0 matches no
        registered event are delivered as SkippedEvent warnings.
        """
        registry = None
        events = list(events)
        if events:
            registry = EventRegistry()
            for event in events:
                registry.register(event)

        log_filter = LogFilter.create(
            addresses if isinstance(addresses, str) else tuple(addresses),
            topic0=topic0,
        )
        subscription = Subscription(
            self._source(LOGS, log_filter),
            registry=registry,
            start_block=start_block,
            queue_size=queue_size,
            backpressure=backpressure,
            max_reconnects=max_reconnects,
            reconnect_delay=reconnect_delay,
        )
        return subscription.start()

    def subscribe_heads(
        self,
        start_block: Optional[int] = None,
        queue_size: int = 256,
        backpressure: Backpressure = Backpressure.DROP_OLDEST,
        max_reconnects: int = 5,
        reconnect_delay: float = 1.0,
    ) -> Subscription:
        """Start a new-head subscription."""
        subscription = Subscription(
            self._source(HEADS),
            start_block=start_block,
            queue_size=queue_size,
            backpressure=backpressure,
            max_reconnects=max_reconnects,
            reconnect_delay=reconnect_delay,
        )
        return subscription.start()
