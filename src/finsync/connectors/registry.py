"""
Connector Registry — creates, drives and tears down connector instances.

One registry is constructed explicitly and passed to whoever needs it. Each
connector id gets one adapter, one state machine and one lock; operations on
the same id are serialized, different ids run concurrently. The registry only
keeps the non-secret part of credentials; the secret lives in the adapter
until it disconnects.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar, Union

from finsync.browser.service import BrowserService
from finsync.config import FinSyncConfig
from finsync.connectors.amazon_connector import AmazonConnector
from finsync.connectors.base import BaseConnector
from finsync.connectors.browser_connector import BrowserPortalConnector
from finsync.connectors.fints_connector import FinTSConnector
from finsync.connectors.gebuhrenfrei_connector import GebuhrenfreiConnector
from finsync.connectors.n26_connector import N26Connector
from finsync.connectors.paypal_connector import PayPalConnector
from finsync.connectors.state import ConnectionStateMachine
from finsync.dedup import dedupe
from finsync.errors import (
    ErrorCode,
    FinSyncError,
    NoPendingChallengeError,
    OperationTimeoutError,
    UnknownConnectorError,
)
from finsync.models.connector import (
    ConnectorCredentials,
    ConnectorState,
    ConnectorStatus,
    ConnectorType,
    OperationKind,
    PartialCredentials,
)
from finsync.models.results import ConnectResult, FetchResult
from finsync.models.transaction import DateRange
from finsync.polling import poll_until

logger = logging.getLogger("finsync.connectors.registry")

S = ConnectorStatus
R = TypeVar("R", ConnectResult, FetchResult)
MFAResult = Union[ConnectResult, FetchResult]
ConnectorFactory = Callable[..., BaseConnector]

_BUILTIN_CONNECTORS: dict[ConnectorType, ConnectorFactory] = {
    ConnectorType.FINTS: FinTSConnector,
    ConnectorType.N26: N26Connector,
    ConnectorType.PAYPAL: PayPalConnector,
    ConnectorType.GEBUHRENFREI: GebuhrenfreiConnector,
    ConnectorType.AMAZON: AmazonConnector,
}


@dataclass
class ConnectorInstance:
    """Everything the registry tracks for one connector id."""

    connector: BaseConnector
    machine: ConnectionStateMachine
    name: str | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # Bumped on disconnect; a call that started under an older generation is stale.
    generation: int = 0
    credentials: PartialCredentials | None = None


class ConnectorRegistry:
    """Manages all connector instances.

    Usage::

        registry = ConnectorRegistry(FinSyncConfig.load("finsync.yaml"))
        registry.create("sparkasse", ConnectorType.FINTS)
        result = await registry.connect("sparkasse", credentials)
        if result.requires_mfa:
            result = await registry.submit_mfa("sparkasse", "123456")
        fetched = await registry.fetch_transactions("sparkasse", DateRange.last_days(30))
        await registry.shutdown()
    """

    def __init__(
        self,
        config: FinSyncConfig | None = None,
        *,
        factories: dict[ConnectorType, ConnectorFactory] | None = None,
        browser: BrowserService | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or FinSyncConfig()
        self._factories = dict(_BUILTIN_CONNECTORS)
        if factories:
            self._factories.update(factories)
        self._browser = browser
        self._sleep = sleep
        self._instances: dict[str, ConnectorInstance] = {}

    @staticmethod
    def available() -> dict[ConnectorType, ConnectorFactory]:
        """The built-in connector type to adapter mapping."""
        return dict(_BUILTIN_CONNECTORS)

    def __len__(self) -> int:
        return len(self._instances)

    def __contains__(self, connector_id: object) -> bool:
        return connector_id in self._instances

    @property
    def browser(self) -> BrowserService:
        """The browser shared by every portal connector, created on first use."""
        if self._browser is None:
            self._browser = BrowserService(self.config.browser)
        return self._browser

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    def create(
        self,
        connector_id: str,
        connector_type: ConnectorType | str,
        *,
        name: str | None = None,
        **options: Any,
    ) -> ConnectorState:
        """Create a connector instance in DISCONNECTED state.

        Raises:
            UnknownConnectorError: If the type has no adapter.
            FinSyncError: If the id is already in use.
        """
        if connector_id in self._instances:
            raise FinSyncError(f"Connector {connector_id} already exists", code=ErrorCode.INVALID_STATE)
        try:
            ctype = ConnectorType(connector_type)
        except ValueError as e:
            raise UnknownConnectorError(f"Unknown connector type: {connector_type}") from e
        factory = self._factories.get(ctype)
        if factory is None:
            raise UnknownConnectorError(f"No adapter registered for {ctype.value}")

        kwargs: dict[str, Any] = dict(options)
        if isinstance(factory, type) and issubclass(factory, BrowserPortalConnector):
            kwargs.setdefault("browser", self.browser)
        connector = factory(connector_id, config=self.config, **kwargs)

        machine = ConnectionStateMachine(connector_id, ctype)
        instance = ConnectorInstance(connector=connector, machine=machine, name=name)
        connector.on_progress = machine.set_progress
        self._instances[connector_id] = instance
        logger.info("Created %s connector %s", ctype.value, connector_id)
        return machine.snapshot()

    def get(self, connector_id: str) -> BaseConnector | None:
        instance = self._instances.get(connector_id)
        return instance.connector if instance else None

    async def remove(self, connector_id: str) -> bool:
        if connector_id not in self._instances:
            return False
        await self.disconnect(connector_id)
        del self._instances[connector_id]
        logger.info("Removed connector %s", connector_id)
        return True

    def auto_discover(self, config: FinSyncConfig | None = None) -> list[str]:
        """Create every enabled connector listed in ``config``. Returns the new ids."""
        created = []
        for conn_config in (config or self.config).connectors:
            if not conn_config.enabled or conn_config.id in self._instances:
                continue
            try:
                self.create(conn_config.id, conn_config.type, name=conn_config.name, **conn_config.options)
            except FinSyncError as e:
                logger.error("Failed to create connector '%s': %s", conn_config.id, e.message)
                continue
            if conn_config.user_id:
                self._instances[conn_config.id].credentials = PartialCredentials(
                    user_id=conn_config.user_id,
                    bank_code=conn_config.bank_code,
                )
            created.append(conn_config.id)
        return created

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    async def status(self, connector_id: str) -> ConnectorState | None:
        """Current state of a connector. An overdue challenge is expired here
        and the connector's page or dialog is released.

        Never waits for a running operation; a locked instance is reported as is.
        """
        instance = self._instances.get(connector_id)
        if instance is None:
            return None
        if not instance.lock.locked():
            async with instance.lock:
                if instance.machine.expire_if_due():
                    logger.info("Challenge for %s expired", connector_id)
                    await instance.connector.cancel_pending()
        return instance.machine.snapshot()

    async def list_states(self) -> list[ConnectorState]:
        states = []
        for connector_id in list(self._instances):
            state = await self.status(connector_id)
            if state is not None:
                states.append(state)
        return states

    def credentials_for(self, connector_id: str) -> PartialCredentials | None:
        instance = self._instances.get(connector_id)
        return instance.credentials if instance else None

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def connect(self, connector_id: str, credentials: ConnectorCredentials) -> ConnectResult:
        async def run(instance: ConnectorInstance) -> ConnectResult:
            machine = instance.machine
            if not machine.can_transition(S.CONNECTING):
                return ConnectResult.failure(
                    f"Cannot connect while {machine.status.value}", ErrorCode.INVALID_STATE
                )
            generation = instance.generation
            machine.transition(S.CONNECTING, message="Connecting...")
            try:
                await instance.connector.initialize(credentials)
            except FinSyncError as e:
                machine.transition(S.ERROR, error=e.message, error_code=e.code)
                return ConnectResult.failure(e.message, e.code)
            instance.credentials = credentials.partial()

            result = await instance.connector.connect()
            if await self._is_stale(instance, generation):
                return ConnectResult.failure("Operation cancelled", ErrorCode.CANCELLED)
            self._apply_connect(instance, result)
            return result

        return await self._exclusive(connector_id, ConnectResult.failure, run)

    async def submit_mfa(
        self,
        connector_id: str,
        code: str | None = None,
        reference: str | None = None,
    ) -> MFAResult:
        """Answer the pending challenge, whether it paused a connect or a fetch."""
        instance = self._instances.get(connector_id)
        failure = ConnectResult.failure
        if instance is not None:
            paused = instance.machine.snapshot().pending_operation
            if paused is not None and paused.kind == OperationKind.FETCH:
                failure = FetchResult.failure

        async def run(instance: ConnectorInstance) -> MFAResult:
            machine = instance.machine
            if machine.expire_if_due():
                await instance.connector.cancel_pending()
                return failure("Verification challenge expired", ErrorCode.MFA_EXPIRED)

            state = machine.snapshot()
            challenge = state.mfa_challenge
            pending = state.pending_operation
            if state.status != S.MFA_REQUIRED or challenge is None or pending is None:
                return failure(NoPendingChallengeError().message, ErrorCode.NO_PENDING_CHALLENGE)
            if reference is not None and reference != pending.reference:
                return failure(f"No pending challenge with reference {reference}", ErrorCode.NO_PENDING_CHALLENGE)
            if not challenge.decoupled and not (code and code.strip()):
                return failure("A verification code is required", ErrorCode.MFA_INVALID)

            generation = instance.generation
            if pending.kind == OperationKind.CONNECT:
                if not challenge.decoupled:
                    machine.transition(S.CONNECTING, message="Verifying code...")
                result = await instance.connector.submit_mfa(code, reference)
                if await self._is_stale(instance, generation):
                    return ConnectResult.failure("Operation cancelled", ErrorCode.CANCELLED)
                self._apply_connect(instance, result)
                return result

            if not challenge.decoupled:
                machine.transition(S.FETCHING, message="Verifying code...")
            fetched = await instance.connector.fetch_transactions_with_mfa(code, reference)
            if await self._is_stale(instance, generation):
                return FetchResult.failure("Operation cancelled", ErrorCode.CANCELLED)
            return self._apply_fetch(instance, fetched)

        return await self._exclusive(connector_id, failure, run)

    async def poll_decoupled(
        self,
        connector_id: str,
        *,
        timeout: float | None = None,
        interval: float | None = None,
    ) -> MFAResult:
        """Keep asking whether a decoupled challenge was approved, until it resolves.

        Gives up with ``TIMEOUT`` after ``polling.timeout_seconds`` (or ``timeout``)
        and moves the connector to ERROR.
        """
        instance = self._instances.get(connector_id)
        if instance is None:
            return ConnectResult.failure(f"Unknown connector {connector_id}", ErrorCode.UNKNOWN_CONNECTOR)
        state = instance.machine.snapshot()
        if state.status != S.MFA_REQUIRED or state.mfa_challenge is None or not state.mfa_challenge.decoupled:
            return ConnectResult.failure("No decoupled challenge is pending", ErrorCode.NO_PENDING_CHALLENGE)
        reference = state.pending_operation.reference if state.pending_operation else None

        polling = self.config.polling
        try:
            return await poll_until(
                lambda: self.submit_mfa(connector_id, None, reference),
                lambda r: not r.requires_mfa and r.error_code != ErrorCode.BUSY,
                interval=polling.interval_seconds if interval is None else interval,
                jitter=polling.jitter_seconds,
                timeout=polling.timeout_seconds if timeout is None else timeout,
                sleep=self._sleep,
            )
        except OperationTimeoutError as e:
            logger.warning("Decoupled approval for %s timed out", connector_id)
            async with instance.lock:
                await instance.connector.cancel_pending()
                instance.machine.transition(S.ERROR, error=e.message, error_code=ErrorCode.TIMEOUT)
            return ConnectResult.failure(e.message, ErrorCode.TIMEOUT)

    async def cancel_mfa(self, connector_id: str) -> ConnectorState | None:
        """Abandon the pending challenge. The connector ends up DISCONNECTED."""
        instance = self._instances.get(connector_id)
        if instance is None:
            return None
        if instance.machine.status != S.MFA_REQUIRED:
            return instance.machine.snapshot()
        instance.generation += 1
        await instance.connector.cancel_pending()
        return instance.machine.transition(S.DISCONNECTED, message="Verification cancelled")

    async def fetch_transactions(
        self,
        connector_id: str,
        date_range: DateRange,
        account: str | None = None,
    ) -> FetchResult:
        async def run(instance: ConnectorInstance) -> FetchResult:
            machine = instance.machine
            if machine.status != S.CONNECTED:
                return FetchResult.failure(
                    f"Cannot fetch while {machine.status.value}. Please connect first.",
                    ErrorCode.INVALID_STATE,
                )
            generation = instance.generation
            machine.transition(S.FETCHING, message="Fetching transactions...")
            result = await instance.connector.fetch_transactions(date_range, account)
            if await self._is_stale(instance, generation):
                return FetchResult.failure("Operation cancelled", ErrorCode.CANCELLED)
            return self._apply_fetch(instance, result)

        return await self._exclusive(connector_id, FetchResult.failure, run)

    async def disconnect(self, connector_id: str) -> ConnectorState | None:
        """Release the connector's session. Works even while an operation is running."""
        instance = self._instances.get(connector_id)
        if instance is None:
            return None
        instance.generation += 1
        await instance.connector.disconnect()
        return instance.machine.transition(S.DISCONNECTED, message="Disconnected")

    async def shutdown(self) -> None:
        """Disconnect everything and close the shared browser."""
        for connector_id in list(self._instances):
            await self.disconnect(connector_id)
        if self._browser is not None:
            await self._browser.close()
        logger.info("Registry shut down")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _exclusive(
        self,
        connector_id: str,
        failure: Callable[[str, ErrorCode], R],
        operation: Callable[[ConnectorInstance], Awaitable[R]],
    ) -> R:
        instance = self._instances.get(connector_id)
        if instance is None:
            return failure(f"Unknown connector {connector_id}", ErrorCode.UNKNOWN_CONNECTOR)
        if instance.lock.locked():
            return failure("Another operation is already running for this connector", ErrorCode.BUSY)
        async with instance.lock:
            return await operation(instance)

    async def _is_stale(self, instance: ConnectorInstance, generation: int) -> bool:
        if instance.generation == generation:
            return False
        # Drop whatever the late call acquired.
        logger.info("Discarding result of a cancelled operation on %s", instance.machine.snapshot().connector_id)
        await instance.connector.disconnect()
        return True

    def _apply_connect(self, instance: ConnectorInstance, result: ConnectResult) -> None:
        machine = instance.machine
        if result.requires_mfa and result.mfa_challenge is not None:
            current = machine.challenge
            if (
                machine.status == S.MFA_REQUIRED
                and current is not None
                and current.reference == result.mfa_challenge.reference
            ):
                machine.still_pending(result.mfa_challenge.message)
                return
            pending = instance.connector.pending
            machine.transition(
                S.MFA_REQUIRED,
                message=result.mfa_challenge.message,
                challenge=result.mfa_challenge,
                pending=pending.info() if pending else None,
            )
        elif result.success:
            machine.transition(S.CONNECTED, message=f"Connected ({len(result.accounts)} account(s))")
        else:
            machine.transition(S.ERROR, error=result.error, error_code=result.error_code)

    def _apply_fetch(self, instance: ConnectorInstance, result: FetchResult) -> FetchResult:
        machine = instance.machine
        if result.requires_mfa and result.mfa_challenge is not None:
            current = machine.challenge
            if (
                machine.status == S.MFA_REQUIRED
                and current is not None
                and current.reference == result.mfa_challenge.reference
            ):
                machine.still_pending(result.mfa_challenge.message)
                return result
            pending = instance.connector.pending
            machine.transition(
                S.MFA_REQUIRED,
                message=result.mfa_challenge.message,
                challenge=result.mfa_challenge,
                pending=pending.info() if pending else None,
            )
            return result

        if not result.success:
            machine.transition(
                S.ERROR,
                error="; ".join(result.errors) or "Fetch failed",
                error_code=result.error_code,
            )
            return result

        unique, duplicates = dedupe(result.transactions)
        result.transactions = unique
        result.stats.duplicates += duplicates
        if machine.status == S.MFA_REQUIRED:
            machine.transition(S.FETCHING, message="Fetching transactions...")
        machine.transition(S.CONNECTED, message=f"Fetched {len(unique)} transaction(s)")
        return result
