"""
Browser portal connector — shared flow for sources reachable only through a web UI.

Subclasses describe a portal with selector chains and a few hooks; this class
runs the login wait loop, MFA rounds, the session check before scraping, and
the bounded "load more / next page" loop.
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from dataclasses import dataclass
from datetime import date
from typing import Any

from playwright.async_api import Page

from finsync.browser.selectors import FieldExtractor, SelectorChain, extract_fields
from finsync.browser.service import BrowserService
from finsync.connectors.base import BaseConnector, PendingOperation
from finsync.errors import (
    ConnectionFailedError,
    MFAInvalidError,
    OperationTimeoutError,
    RowParseError,
    SessionExpiredError,
)
from finsync.models.connector import MFAChallenge
from finsync.models.results import ConnectResult, FetchResult
from finsync.models.transaction import AccountInfo, DateRange, FetchedTransaction
from finsync.parsers.amounts import stable_hash
from finsync.polling import poll_until

logger = logging.getLogger("finsync.connectors.browser")

LOGGED_IN = "logged_in"
MFA = "mfa"
FAILED = "failed"
WAITING = "waiting"
LOAD_MORE = "load_more"
NEXT_PAGE = "next_page"


@dataclass(frozen=True)
class ChallengeShape:
    """What an MFA step looked like on the page when it was surfaced.

    A chained second factor usually swaps the input field or the prompt; an
    empty prompt on the current page never counts as a change by itself.
    """

    input_selector: str | None
    indicator_selector: str | None
    message: str | None

    def differs_from(self, current: ChallengeShape) -> bool:
        if current.input_selector != self.input_selector:
            return True
        if current.indicator_selector != self.indicator_selector:
            return True
        return bool(current.message) and current.message != self.message


class BrowserPortalConnector(BaseConnector):
    """Base for connectors that drive a real browser page.

    A portal subclass sets the URLs and selector chains and implements:
    - `_fill_login()`: type the credentials and submit the form.
    - `_detect_challenge()`: describe the MFA step currently shown.
    - `_open_activity()`: navigate to the transaction list for a date range.
    - `_to_transaction()`: turn one scraped row into a transaction.

    The page is bound to the connector id and closed on disconnect and on
    every fatal error.
    """

    login_url: str = ""
    # URL fragments that mean the portal sent us back to its login form.
    login_markers: tuple[str, ...] = ()

    logged_in: SelectorChain
    error_message: SelectorChain
    password_field: SelectorChain
    mfa_indicators: SelectorChain
    mfa_input: SelectorChain
    mfa_submit: SelectorChain
    mfa_message: SelectorChain | None = None
    session_indicators: SelectorChain | None = None

    row_selector: SelectorChain
    row_fields: dict[str, FieldExtractor] = {}
    load_more: SelectorChain | None = None
    next_page: SelectorChain | None = None

    poll_interval: float = 1.0
    poll_jitter: float = 0.5
    session_check_seconds: float = 5.0

    def __init__(
        self,
        connector_id: str | None = None,
        *,
        browser: BrowserService | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(connector_id, **kwargs)
        self.settings = self.config.browser
        self.browser = browser or BrowserService(self.settings)
        self._page: Page | None = None

    # ------------------------------------------------------------------
    # Portal hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _fill_login(self, page: Page) -> None:
        ...

    @abstractmethod
    async def _detect_challenge(self, page: Page) -> MFAChallenge | None:
        ...

    @abstractmethod
    async def _open_activity(self, page: Page, date_range: DateRange) -> bool:
        """Show the transaction list. Returns True if the portal filtered by date."""

    @abstractmethod
    def _to_transaction(self, row: dict[str, str | None], seen: dict[str, int]) -> FetchedTransaction | None:
        """Convert one scraped row. Return None for rows that carry no transaction."""

    async def _read_accounts(self, page: Page) -> list[AccountInfo]:
        return []

    # ------------------------------------------------------------------
    # Page lifecycle
    # ------------------------------------------------------------------

    async def _open_page(self) -> Page:
        self._page = await self.browser.new_page(self.connector_id)
        return self._page

    def _require_page(self) -> Page:
        if self._page is None or self._page.is_closed():
            raise SessionExpiredError("No browser session active. Please reconnect.")
        return self._page

    async def _release_resources(self) -> None:
        self._page = None
        await self.browser.close_page(self.connector_id)

    async def _disconnect(self) -> None:
        self._accounts = []
        logger.info("%s connector %s disconnected", self.name, self.connector_id)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def _connect(self) -> ConnectResult:
        page = await self._open_page()
        await self.browser.navigate(page, self.login_url)
        await self.browser.dismiss_cookies(page)

        if await self.logged_in.exists(page):
            logger.info("%s: already logged in from the browser profile", self.name)
            return await self._complete_login(page)

        if self.user_id and self._secret is not None:
            await self._fill_login(page)
        else:
            logger.info("%s: no stored credentials, waiting for a manual login", self.name)
        return await self._await_outcome(page)

    async def _login_state(self, page: Page) -> str:
        if await self.logged_in.exists(page):
            return LOGGED_IN
        if await self.error_message.text(page):
            return FAILED
        if await self.mfa_indicators.exists(page):
            return MFA
        return WAITING

    async def _await_outcome(self, page: Page, answered: PendingOperation | None = None) -> ConnectResult:
        """Poll until the portal shows a result; ``answered`` is the challenge just submitted."""

        async def check() -> str:
            state = await self._login_state(page)
            if state == MFA and answered is not None and not await self._is_new_challenge(page, answered):
                return WAITING
            return state

        try:
            state = await poll_until(
                check,
                lambda s: s != WAITING,
                interval=self.poll_interval,
                jitter=self.poll_jitter,
                timeout=self.settings.login_timeout_seconds,
            )
        except OperationTimeoutError as e:
            raise OperationTimeoutError(f"Login did not complete in time ({e.message})") from e

        if state == LOGGED_IN:
            return await self._complete_login(page)
        if state == FAILED:
            message = await self.error_message.text(page) or "Login failed"
            if answered is not None:
                raise MFAInvalidError(message)
            raise ConnectionFailedError(message)

        challenge = await self._detect_challenge(page)
        if challenge is None:
            raise ConnectionFailedError("The portal asked for verification in an unsupported way")
        if answered is not None:
            logger.info("%s: a further %s challenge followed the first one", self.name, challenge.type.value)
        return self._pause_connect(challenge, continuation=await self._challenge_shape(page))

    async def _challenge_shape(self, page: Page) -> ChallengeShape:
        return ChallengeShape(
            input_selector=await self.mfa_input.match(page),
            indicator_selector=await self.mfa_indicators.match(page),
            message=await self.mfa_message.text(page) if self.mfa_message else None,
        )

    async def _is_new_challenge(self, page: Page, answered: PendingOperation) -> bool:
        before = answered.continuation
        if not isinstance(before, ChallengeShape):
            return False
        return before.differs_from(await self._challenge_shape(page))

    async def _submit_mfa(self, pending: PendingOperation, code: str | None) -> ConnectResult:
        page = self._require_page()

        if pending.challenge.decoupled and not (code and code.strip()):
            state = await self._login_state(page)
            if state == LOGGED_IN:
                return await self._complete_login(page)
            if state == FAILED:
                raise MFAInvalidError(await self.error_message.text(page) or "Approval was rejected")
            if state == MFA and await self._is_new_challenge(page, pending):
                return await self._await_outcome(page, answered=pending)
            return ConnectResult.pending(self._still_pending(pending, "Still waiting for approval in the app..."))

        if not await self.browser.type_like_human(page, self.mfa_input, (code or "").strip()):
            raise MFAInvalidError("The verification code field is gone. Please reconnect.")
        await self.browser.random_delay()
        await self.browser.click(page, self.mfa_submit)
        await self.browser.wait_for_settle(page)
        return await self._await_outcome(page, answered=pending)

    async def _complete_login(self, page: Page) -> ConnectResult:
        accounts = await self._read_accounts(page)
        logger.info("%s login complete (%d account(s))", self.name, len(accounts))
        return ConnectResult.done(accounts)

    async def validate_session(self) -> bool:
        if not self._connected or self._page is None or self._page.is_closed():
            return False
        return await self._session_alive(self._page)

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    async def _session_alive(self, page: Page) -> bool:
        if any(marker in (page.url or "") for marker in self.login_markers):
            return False
        if await self.password_field.exists(page):
            return False
        indicators = self.session_indicators or self.logged_in
        try:
            await poll_until(
                lambda: indicators.exists(page),
                bool,
                interval=0.5,
                timeout=self.session_check_seconds,
            )
        except OperationTimeoutError:
            return False
        return True

    async def _fetch(self, date_range: DateRange, account: str | None) -> FetchResult:
        page = self._require_page()
        filtered = await self._open_activity(page, date_range)
        if not await self._session_alive(page):
            raise SessionExpiredError()
        if not filtered:
            logger.info("%s: no server-side date filter, filtering scraped rows", self.name)

        rows = await self._collect_rows(page)
        result = FetchResult(success=True)
        seen: dict[str, int] = {}
        for index, row in enumerate(rows, start=1):
            result.stats.total_rows += 1
            try:
                tx = self._to_transaction(row, seen)
            except RowParseError as e:
                result.stats.errors += 1
                result.add_error(f"Row {index}: {e.message}")
                continue
            if tx is None or not date_range.contains(tx.date):
                result.stats.skipped += 1
                continue
            result.transactions.append(tx)
            result.stats.imported += 1

        logger.info(
            "%s: scraped %d rows, %d transactions in range",
            self.name,
            len(rows),
            len(result.transactions),
        )
        return result

    async def _collect_rows(self, page: Page) -> list[dict[str, str | None]]:
        """Scrape rows, following "load more" / "next page" up to the pagination cap."""
        limit = self.settings.max_pagination
        rows: list[dict[str, str | None]] = []
        page_start = 0
        for index in range(limit):
            current = [await extract_fields(el, self.row_fields) for el in await self.row_selector.all(page)]
            # A "load more" list grows in place; a new page starts a new slice.
            rows[page_start:] = current
            self._report_progress(index + 1, limit, f"{len(rows)} rows")

            if index + 1 >= limit:
                logger.info("%s: stopped paging after %d pages", self.name, limit)
                break
            mode = await self._advance(page)
            if mode is None:
                break
            if mode == NEXT_PAGE:
                page_start = len(rows)
        return rows

    async def _advance(self, page: Page) -> str | None:
        for mode, selectors in ((LOAD_MORE, self.load_more), (NEXT_PAGE, self.next_page)):
            if selectors is None:
                continue
            button = await selectors.first(page)
            if button is None:
                continue
            if not await button.is_visible() or await button.is_disabled():
                continue
            await button.click()
            await self.browser.wait_for_settle(page)
            return mode
        return None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _row_id(self, tx_date: date, seen: dict[str, int], *parts: Any) -> str:
        """Content-based id; identical rows on one day get an occurrence suffix."""
        base_id = f"{self.name}-{tx_date.isoformat()}-{stable_hash(*parts)}"
        occurrence = seen.get(base_id, 0) + 1
        seen[base_id] = occurrence
        return base_id if occurrence == 1 else f"{base_id}-{occurrence}"
