"""Tests for the browser portal connectors against a scripted fake page."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Callable

import pytest

from finsync.browser.selectors import AttributeValue, CellText, FieldExtractor, SelectorChain, SelectorText, chain
from finsync.connectors.browser_connector import ChallengeShape
from finsync.connectors.gebuhrenfrei_connector import GebuhrenfreiConnector
from finsync.connectors.paypal_connector import PayPalConnector
from finsync.connectors.registry import ConnectorRegistry
from finsync.errors import ErrorCode
from finsync.models.connector import ConnectorCredentials, ConnectorStatus, MFAType
from finsync.models.transaction import DateRange

MAY = DateRange(start=date(2024, 5, 1), end=date(2024, 5, 31))


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeElement:
    def __init__(
        self,
        text: str = "",
        *,
        attrs: dict[str, str] | None = None,
        children: dict[str, "FakeElement"] | None = None,
        cells: list[str] | None = None,
        on_click: Callable[[], None] | None = None,
    ) -> None:
        self.text = text
        self.attrs = attrs or {}
        self.children = children or {}
        self.cells = [FakeElement(c) for c in cells or []]
        self.on_click = on_click

    async def text_content(self) -> str:
        return self.text

    async def get_attribute(self, name: str) -> str | None:
        return self.attrs.get(name)

    async def query_selector(self, selector: str) -> "FakeElement | None":
        return self.children.get(selector)

    async def query_selector_all(self, selector: str) -> list["FakeElement"]:
        if selector == "td":
            return self.cells
        child = self.children.get(selector)
        return [child] if child else []

    async def is_visible(self) -> bool:
        return True

    async def is_disabled(self) -> bool:
        return False

    async def click(self) -> None:
        if self.on_click:
            self.on_click()


class FakePage:
    def __init__(self) -> None:
        self.dom: dict[str, list[FakeElement]] = {}
        self.url = "about:blank"
        self.closed = False

    def show(self, *selectors: str, text: str = "") -> None:
        for selector in selectors:
            self.dom[selector] = [FakeElement(text)]

    def hide(self, *selectors: str) -> None:
        for selector in selectors:
            self.dom.pop(selector, None)

    def is_closed(self) -> bool:
        return self.closed

    async def query_selector(self, selector: str) -> FakeElement | None:
        found = self.dom.get(selector)
        return found[0] if found else None

    async def query_selector_all(self, selector: str) -> list[FakeElement]:
        return list(self.dom.get(selector, []))


class FakeBrowser:
    """Records what the connector does; ``actions`` run when a selector is clicked."""

    def __init__(self, page: FakePage) -> None:
        self.page = page
        self.actions: dict[str, Callable[[], None]] = {}
        self.on_navigate: dict[str, Callable[[], None]] = {}
        self.typed: list[tuple[str, str]] = []
        self.clicked: list[str] = []
        self.closed_pages: list[str] = []

    async def new_page(self, connector_id: str) -> FakePage:
        return self.page

    async def close_page(self, connector_id: str) -> None:
        self.closed_pages.append(connector_id)

    async def navigate(self, page: FakePage, url: str, wait_until: str = "domcontentloaded") -> None:
        page.url = url
        for prefix, action in self.on_navigate.items():
            if url.startswith(prefix):
                action()

    async def dismiss_cookies(self, page: FakePage) -> bool:
        return False

    def _match(self, page: FakePage, selectors: SelectorChain) -> str | None:
        return next((s for s in selectors if s in page.dom), None)

    async def type_like_human(self, page: FakePage, selectors: SelectorChain, text: str) -> bool:
        selector = self._match(page, selectors)
        if selector is None:
            return False
        self.typed.append((selector, text))
        return True

    async def click(self, page: FakePage, selectors: SelectorChain) -> bool:
        selector = self._match(page, selectors)
        if selector is None:
            return False
        self.clicked.append(selector)
        if selector in self.actions:
            self.actions[selector]()
        return True

    async def random_delay(self, min_ms: int | None = None, max_ms: int | None = None) -> None:
        pass

    async def wait_for_settle(self, page: FakePage, timeout_ms: int | None = None) -> None:
        pass


def _fast(connector):
    connector.poll_interval = 0
    connector.poll_jitter = 0
    connector.session_check_seconds = 0
    return connector


# ---------------------------------------------------------------------------
# Selector helpers
# ---------------------------------------------------------------------------


class TestSelectors:
    def test_parse_splits_alternatives(self) -> None:
        assert chain("#a, .b ,  input[name=c]").selectors == ("#a", ".b", "input[name=c]")

    def test_empty_chain_rejected(self) -> None:
        with pytest.raises(ValueError):
            SelectorChain()

    @pytest.mark.asyncio
    async def test_first_match_wins(self) -> None:
        page = FakePage()
        page.show(".second", text="two")
        page.show(".third", text="three")
        assert await chain(".first, .second, .third").text(page) == "two"
        assert await chain(".missing").text(page) is None

    @pytest.mark.asyncio
    async def test_field_extractor_falls_back(self) -> None:
        row = FakeElement(attrs={"data-id": "x1"}, cells=["15.05.2024", "Shop", "  "])
        date_field = FieldExtractor([SelectorText(chain(".date")), CellText(1)])
        blank = FieldExtractor([CellText(3), CellText(9)])
        assert await date_field.extract(row) == "15.05.2024"
        assert await blank.extract(row) is None
        assert await AttributeValue("data-id").extract(row) == "x1"

    @pytest.mark.asyncio
    async def test_match_returns_selector(self) -> None:
        page = FakePage()
        page.show(".second")
        assert await chain(".first, .second").match(page) == ".second"
        assert await chain(".missing").match(page) is None


class TestChallengeShape:
    def test_new_input_field_is_a_new_challenge(self) -> None:
        sms = ChallengeShape("#otpCode", "#otpCode", "Enter the code")
        assert sms.differs_from(ChallengeShape("#security-code", "#security-code", "Enter the code"))
        assert sms.differs_from(ChallengeShape("#otpCode", ".app-option", None))

    def test_same_form_is_the_same_challenge(self) -> None:
        sms = ChallengeShape("#otpCode", "#otpCode", "Enter the code")
        assert not sms.differs_from(ChallengeShape("#otpCode", "#otpCode", "Enter the code"))
        assert not sms.differs_from(ChallengeShape("#otpCode", "#otpCode", None))
        assert sms.differs_from(ChallengeShape("#otpCode", "#otpCode", "Enter the second code"))


# ---------------------------------------------------------------------------
# PayPal
# ---------------------------------------------------------------------------


def _paypal_row(tx_id: str | None, day: str, name: str, amount: str, tx_type: str = "Payment") -> FakeElement:
    return FakeElement(
        attrs={"data-transaction-id": tx_id} if tx_id else {},
        children={
            '[data-testid="transaction-date"]': FakeElement(day),
            '[data-testid="transaction-name"]': FakeElement(name),
            '[data-testid="transaction-amount"]': FakeElement(amount),
            '[data-testid="transaction-type"]': FakeElement(tx_type),
        },
    )


@pytest.fixture
def page() -> FakePage:
    return FakePage()


@pytest.fixture
def browser(page: FakePage) -> FakeBrowser:
    return FakeBrowser(page)


@pytest.fixture
def credentials() -> ConnectorCredentials:
    return ConnectorCredentials(user_id="me@example.com", pin="pw")


@pytest.fixture
def paypal(browser: FakeBrowser) -> PayPalConnector:
    return _fast(PayPalConnector("paypal", browser=browser))


def _paypal_login_flow(page: FakePage, browser: FakeBrowser) -> None:
    page.show("#email", "#btnNext")
    browser.actions["#btnNext"] = lambda: page.show("#password", "#btnLogin")
    browser.actions["#btnLogin"] = lambda: page.show("#otpCode", "#btnSubmit")
    browser.on_navigate["https://www.paypal.com/myaccount/summary"] = lambda: page.show(
        '[data-testid="balance-amount"]', text="1.234,56 €"
    )


def _chained_flow(page: FakePage, browser: FakeBrowser) -> None:
    """SMS code first, then a second code in a different field under the same prompt."""
    _paypal_login_flow(page, browser)

    def ask_code() -> None:
        page.show("#otpCode", "#btnSubmit")
        page.show(".mfaDescription", text="Enter the code we sent you")

    def ask_second_code() -> None:
        page.hide("#otpCode")
        page.show("#security-code")

    def accept() -> None:
        page.hide("#security-code")
        page.show(".myAccountTab")

    steps = [ask_second_code, accept]
    browser.actions["#btnLogin"] = ask_code
    browser.actions["#btnSubmit"] = lambda: steps.pop(0)()


class TestPayPalLogin:
    @pytest.mark.asyncio
    async def test_warm_profile_skips_login(
        self, paypal: PayPalConnector, page: FakePage, browser: FakeBrowser, credentials: ConnectorCredentials
    ) -> None:
        page.show(".myAccountTab")
        await paypal.initialize(credentials)

        result = await paypal.connect()
        assert result.connected
        assert browser.typed == []

    @pytest.mark.asyncio
    async def test_sms_code_round(
        self, paypal: PayPalConnector, page: FakePage, browser: FakeBrowser, credentials: ConnectorCredentials
    ) -> None:
        _paypal_login_flow(page, browser)

        def accept_code() -> None:
            page.hide("#otpCode")
            page.show(".myAccountTab")

        browser.actions["#btnSubmit"] = accept_code
        await paypal.initialize(credentials)

        result = await paypal.connect()
        assert result.requires_mfa
        assert result.mfa_challenge.type == MFAType.SMS
        assert ("#email", "me@example.com") in browser.typed
        assert ("#password", "pw") in browser.typed

        result = await paypal.submit_mfa("123456", result.mfa_challenge.reference)
        assert result.connected
        assert ("#otpCode", "123456") in browser.typed
        account = result.accounts[0]
        assert account.balance == Decimal("1234.56")
        assert account.account_number == "me@example.com"

    @pytest.mark.asyncio
    async def test_rejected_code(
        self, paypal: PayPalConnector, page: FakePage, browser: FakeBrowser, credentials: ConnectorCredentials
    ) -> None:
        _paypal_login_flow(page, browser)
        browser.actions["#btnSubmit"] = lambda: page.show(".notifications-error", text="Code ist falsch")
        await paypal.initialize(credentials)
        await paypal.connect()

        result = await paypal.submit_mfa("000000")
        assert result.error_code == ErrorCode.MFA_INVALID
        assert result.error == "Code ist falsch"
        assert browser.closed_pages == ["paypal"]

    @pytest.mark.asyncio
    async def test_wrong_password(
        self, paypal: PayPalConnector, page: FakePage, browser: FakeBrowser, credentials: ConnectorCredentials
    ) -> None:
        page.show("#email", "#password", "#btnLogin")
        browser.actions["#btnLogin"] = lambda: page.show(".notifications-error", text="Login fehlgeschlagen")
        await paypal.initialize(credentials)

        result = await paypal.connect()
        assert result.error_code == ErrorCode.CONNECTION_FAILED
        assert result.error == "Login fehlgeschlagen"

    @pytest.mark.asyncio
    async def test_missing_code(
        self, paypal: PayPalConnector, page: FakePage, browser: FakeBrowser, credentials: ConnectorCredentials
    ) -> None:
        _paypal_login_flow(page, browser)
        await paypal.initialize(credentials)
        await paypal.connect()

        result = await paypal.submit_mfa("  ")
        assert result.error_code == ErrorCode.MFA_INVALID
        assert paypal.pending is not None

    @pytest.mark.asyncio
    async def test_chained_second_factor(
        self, paypal: PayPalConnector, page: FakePage, browser: FakeBrowser, credentials: ConnectorCredentials
    ) -> None:
        _chained_flow(page, browser)
        await paypal.initialize(credentials)

        first = await paypal.connect()
        assert first.requires_mfa

        second = await paypal.submit_mfa("111111", first.mfa_challenge.reference)
        assert second.requires_mfa
        assert second.mfa_challenge.reference != first.mfa_challenge.reference
        assert second.mfa_challenge.message == first.mfa_challenge.message
        assert paypal.pending.reference == second.mfa_challenge.reference
        assert ("#otpCode", "111111") in browser.typed

        stale = await paypal.submit_mfa("111111", first.mfa_challenge.reference)
        assert stale.error_code == ErrorCode.NO_PENDING_CHALLENGE

        done = await paypal.submit_mfa("222222", second.mfa_challenge.reference)
        assert done.connected
        assert ("#security-code", "222222") in browser.typed

    @pytest.mark.asyncio
    async def test_chained_factor_through_registry(
        self, page: FakePage, browser: FakeBrowser, credentials: ConnectorCredentials
    ) -> None:
        registry = ConnectorRegistry(browser=browser)
        registry.create("paypal", "paypal")
        _fast(registry.get("paypal"))
        _chained_flow(page, browser)

        first = await registry.connect("paypal", credentials)
        second = await registry.submit_mfa("paypal", "111111")
        assert second.mfa_challenge.reference != first.mfa_challenge.reference
        state = await registry.status("paypal")
        assert state.status == ConnectorStatus.MFA_REQUIRED
        assert state.pending_operation.reference == second.mfa_challenge.reference

        done = await registry.submit_mfa("paypal", "222222", second.mfa_challenge.reference)
        assert done.connected
        history = [t.target for t in registry._instances["paypal"].machine.history]
        assert history == [
            ConnectorStatus.CONNECTING,
            ConnectorStatus.MFA_REQUIRED,
            ConnectorStatus.CONNECTING,
            ConnectorStatus.MFA_REQUIRED,
            ConnectorStatus.CONNECTING,
            ConnectorStatus.CONNECTED,
        ]


class TestPayPalFetch:
    async def _connected(self, paypal: PayPalConnector, page: FakePage, credentials: ConnectorCredentials) -> None:
        page.show(".myAccountTab")
        await paypal.initialize(credentials)
        await paypal.connect()

    @pytest.mark.asyncio
    async def test_scrapes_rows(
        self, paypal: PayPalConnector, page: FakePage, credentials: ConnectorCredentials
    ) -> None:
        await self._connected(paypal, page, credentials)
        page.dom['[data-testid="transaction-row"]'] = [
            _paypal_row("7AB", "May 15, 2024", "Spotify", "−9,99 €", "Automatic Payment"),
            _paypal_row(None, "May 16, 2024", "Kiosk", "−2,00 €"),
            _paypal_row(None, "May 16, 2024", "Kiosk", "−2,00 €"),
            _paypal_row("OLD", "April 2, 2024", "Old", "−1,00 €"),
            _paypal_row("BAD", "someday", "Broken", "−1,00 €"),
        ]

        result = await paypal.fetch_transactions(MAY)

        assert result.success
        ids = [t.external_id for t in result.transactions]
        assert ids[0] == "paypal-7AB"
        assert ids[2] == f"{ids[1]}-2"
        assert result.transactions[0].description == "Automatic Payment: Spotify"
        assert result.transactions[0].amount == Decimal("-9.99")
        assert result.stats.skipped == 1
        assert result.stats.errors == 1
        assert result.errors[0].startswith("Row 5:")

    @pytest.mark.asyncio
    async def test_session_lost(
        self, paypal: PayPalConnector, page: FakePage, browser: FakeBrowser, credentials: ConnectorCredentials
    ) -> None:
        await self._connected(paypal, page, credentials)
        browser.on_navigate["https://www.paypal.com/myaccount/transactions"] = lambda: setattr(
            page, "url", "https://www.paypal.com/signin?returnUri=transactions"
        )

        result = await paypal.fetch_transactions(MAY)
        assert result.error_code == ErrorCode.SESSION_EXPIRED
        assert result.transactions == []
        assert not paypal.is_connected()

    def test_import_text(self, paypal: PayPalConnector) -> None:
        result = paypal.import_text("Shop\n−1,00 €\n5 May . Payment\n", MAY)
        assert result.stats.total_rows == 1


# ---------------------------------------------------------------------------
# Gebührenfrei
# ---------------------------------------------------------------------------


@pytest.fixture
def gebuhrenfrei(browser: FakeBrowser) -> GebuhrenfreiConnector:
    return _fast(GebuhrenfreiConnector("card", browser=browser))


class TestGebuhrenfrei:
    @pytest.mark.asyncio
    async def test_prefers_sms(
        self,
        gebuhrenfrei: GebuhrenfreiConnector,
        page: FakePage,
        browser: FakeBrowser,
        credentials: ConnectorCredentials,
    ) -> None:
        page.show("#username", "#password", ".login-button")
        browser.actions[".login-button"] = lambda: page.show(".sms-option", ".app-option")
        browser.actions[".sms-option"] = lambda: page.show("#code")
        await gebuhrenfrei.initialize(credentials)

        result = await gebuhrenfrei.connect()
        assert result.mfa_challenge.type == MFAType.SMS
        assert ".sms-option" in browser.clicked

    @pytest.mark.asyncio
    async def test_app_approval(
        self,
        gebuhrenfrei: GebuhrenfreiConnector,
        page: FakePage,
        browser: FakeBrowser,
        credentials: ConnectorCredentials,
    ) -> None:
        page.show("#username", "#password", ".login-button")
        browser.actions[".login-button"] = lambda: page.show(".app-option")
        await gebuhrenfrei.initialize(credentials)

        result = await gebuhrenfrei.connect()
        challenge = result.mfa_challenge
        assert challenge.decoupled
        assert challenge.type == MFAType.PUSH

        result = await gebuhrenfrei.submit_mfa(None)
        assert result.requires_mfa
        assert result.mfa_challenge.reference == challenge.reference

        page.hide(".app-option")
        page.show(".dashboard")
        page.show(".card-number", text="5555 **** **** 1234")
        page.show(".balance", text="-250,00 €")

        result = await gebuhrenfrei.submit_mfa(None)
        assert result.connected
        assert result.accounts[0].account_number == "5555 **** **** 1234"
        assert result.accounts[0].balance == Decimal("-250.00")

    @pytest.mark.asyncio
    async def test_paginated_fetch(
        self,
        gebuhrenfrei: GebuhrenfreiConnector,
        page: FakePage,
        browser: FakeBrowser,
        credentials: ConnectorCredentials,
    ) -> None:
        page.show(".dashboard")
        await gebuhrenfrei.initialize(credentials)
        await gebuhrenfrei.connect()

        page.dom["tbody tr"] = [FakeElement(cells=["02.05.2024", "REWE", "-12,50 €", "Gebucht"])]

        def next_page() -> None:
            page.dom["tbody tr"] = [FakeElement(cells=["03.05.2024", "Tankstelle", "-40,00 €", "Gebucht"])]
            page.hide(".pagination-next")

        page.dom[".pagination-next"] = [FakeElement(on_click=next_page)]

        result = await gebuhrenfrei.fetch_transactions(MAY)
        assert result.success
        assert [t.description for t in result.transactions] == ["REWE", "Tankstelle"]
        assert result.transactions[1].amount == Decimal("-40.00")
        assert result.transactions[0].raw_data["status"] == "Gebucht"
        assert page.url == "https://mein.gebuhrenfrei.com/transactions"

    @pytest.mark.asyncio
    async def test_pagination_is_capped(
        self,
        gebuhrenfrei: GebuhrenfreiConnector,
        page: FakePage,
        credentials: ConnectorCredentials,
    ) -> None:
        page.show(".dashboard")
        gebuhrenfrei.settings = gebuhrenfrei.settings.model_copy(update={"max_pagination": 2})
        await gebuhrenfrei.initialize(credentials)
        await gebuhrenfrei.connect()

        clicks = []
        page.dom["tbody tr"] = [FakeElement(cells=["02.05.2024", "Loop", "-1,00 €", ""])]
        page.dom[".pagination-next"] = [FakeElement(on_click=lambda: clicks.append(1))]

        result = await gebuhrenfrei.fetch_transactions(MAY)
        assert result.success
        assert len(clicks) == 1
