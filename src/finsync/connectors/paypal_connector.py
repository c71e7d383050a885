"""
PayPal Connector — scrapes the PayPal activity page in a real browser.

PayPal has no personal-account API, so this logs in through paypal.com and
reads the activity list. A warm browser profile usually skips the login form.
Pasted activity text can be imported offline with ``import_text``.
"""

from __future__ import annotations

import logging
from typing import Any

from playwright.async_api import Page

from finsync.browser.selectors import (
    AttributeValue,
    FieldExtractor,
    SelectorText,
    chain,
)
from finsync.connectors.browser_connector import BrowserPortalConnector
from finsync.errors import RowParseError
from finsync.models.connector import ConnectorType, MFAChallenge, MFAType
from finsync.models.results import ImportResult
from finsync.models.transaction import AccountInfo, DateRange, FetchedTransaction
from finsync.parsers.amounts import extract_amount, parse_amount, parse_date
from finsync.parsers.paypal_text import PayPalTextParser

logger = logging.getLogger("finsync.connectors.paypal")

PAYPAL_LOGIN_URL = "https://www.paypal.com/signin"
PAYPAL_ACTIVITY_URL = "https://www.paypal.com/myaccount/transactions"
PAYPAL_SUMMARY_URL = "https://www.paypal.com/myaccount/summary"

EMAIL_INPUT = chain("#email")
PASSWORD_INPUT = chain("#password")
NEXT_BUTTON = chain("#btnNext")
LOGIN_BUTTON = chain("#btnLogin")
BALANCE = chain('[data-testid="balance-amount"], .balance-value, .js-balance')
ACCOUNT_EMAIL = chain('[data-testid="email-address"], .profile-email')
PROFILE_NAME = chain('.pp-header__full-name, [data-testid="username-label"]')


def _currency_of(text: str) -> str:
    if "$" in text or "USD" in text:
        return "USD"
    if "£" in text or "GBP" in text:
        return "GBP"
    return "EUR"


class PayPalConnector(BrowserPortalConnector):
    """Fetch PayPal activity through the website.

    Usage::

        connector = PayPalConnector("paypal", browser=BrowserService(config.browser))
        await connector.initialize(ConnectorCredentials(user_id="me@example.com", pin="..."))
        result = await connector.connect()
        if result.requires_mfa:
            result = await connector.submit_mfa("123456")
        fetched = await connector.fetch_transactions(DateRange.last_days(30))
    """

    name = "paypal"
    description = "PayPal activity via browser automation"
    connector_type = ConnectorType.PAYPAL

    login_url = PAYPAL_LOGIN_URL
    login_markers = ("/signin",)

    logged_in = chain('.myAccountTab, [data-testid="account-balance"], .pp-header__account')
    error_message = chain('.notifications-error, .notification--error, [data-testid="error-message"]')
    password_field = PASSWORD_INPUT
    mfa_input = chain('#otpCode, #security-code, input[name="security_code"]')
    mfa_indicators = mfa_input
    mfa_submit = chain('#btnSubmit, button[type="submit"]')
    mfa_message = chain(".mfaDescription, .otp-header-text")
    session_indicators = chain(
        '.myAccountTab, [data-testid="account-balance"], .pp-header__account, '
        '[data-testid="transaction-list"], .js-transactionList, .transaction-list'
    )

    row_selector = chain('[data-testid="transaction-row"], .transaction-row, .js-transactionRow')
    row_fields = {
        "id": FieldExtractor([AttributeValue("data-transaction-id")]),
        "date": FieldExtractor([SelectorText(chain('[data-testid="transaction-date"], .transactionDate, .date'))]),
        "name": FieldExtractor([SelectorText(chain('[data-testid="transaction-name"], .transactionName, .name'))]),
        "amount": FieldExtractor(
            [SelectorText(chain('[data-testid="transaction-amount"], .transactionAmount, .amount'))]
        ),
        "type": FieldExtractor([SelectorText(chain('[data-testid="transaction-type"], .transactionType, .type'))]),
        "status": FieldExtractor(
            [SelectorText(chain('[data-testid="transaction-status"], .transactionStatus, .status'))]
        ),
    }
    load_more = chain('[data-testid="load-more-button"], .loadMoreBtn, .js-load-more')

    def __init__(self, connector_id: str | None = None, **kwargs: Any) -> None:
        super().__init__(connector_id, **kwargs)
        self.text_parser = PayPalTextParser(max_reported_errors=self.config.imports.max_reported_errors)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def _fill_login(self, page: Page) -> None:
        if await self.browser.type_like_human(page, EMAIL_INPUT, self.user_id or ""):
            await self.browser.random_delay()
            # PayPal splits the form: email first, then the password step.
            if await self.browser.click(page, NEXT_BUTTON):
                await self.browser.wait_for_settle(page)
        if await self.browser.type_like_human(page, PASSWORD_INPUT, self.secret):
            await self.browser.random_delay()
            await self.browser.click(page, LOGIN_BUTTON)

    async def _detect_challenge(self, page: Page) -> MFAChallenge | None:
        if not await self.mfa_input.exists(page):
            return None
        message = await self.mfa_message.text(page) if self.mfa_message else None
        return MFAChallenge(
            type=MFAType.SMS,
            message=message or "Please enter the security code sent to your device.",
            decoupled=False,
            expires_at=self._challenge_expiry(int(self.config.polling.timeout_seconds)),
        )

    async def _read_accounts(self, page: Page) -> list[AccountInfo]:
        await self.browser.navigate(page, PAYPAL_SUMMARY_URL)
        await self.browser.random_delay()
        balance_text = await BALANCE.text(page)
        account_id = await ACCOUNT_EMAIL.text(page) or self.user_id or "PayPal Account"
        return [
            AccountInfo(
                account_number=account_id,
                account_type="wallet",
                currency=_currency_of(balance_text or ""),
                owner_name=await PROFILE_NAME.text(page),
                balance=extract_amount(balance_text),
            )
        ]

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------

    async def _open_activity(self, page: Page, date_range: DateRange) -> bool:
        url = (
            f"{PAYPAL_ACTIVITY_URL}?free_text_search="
            f"&activity_from={date_range.start.isoformat()}&activity_to={date_range.end.isoformat()}"
        )
        await self.browser.navigate(page, url)
        await self.browser.random_delay()
        return "activity_from" in (page.url or "")

    def _to_transaction(self, row: dict[str, str | None], seen: dict[str, int]) -> FetchedTransaction | None:
        name = row.get("name") or ""
        amount_text = row.get("amount") or ""
        if not name and not amount_text:
            return None

        tx_date = parse_date(row.get("date"))
        if tx_date is None:
            raise RowParseError(f"Invalid date {row.get('date')!r}")
        amount = parse_amount(amount_text)
        if amount is None:
            raise RowParseError(f"Invalid amount {amount_text!r}")

        tx_type = row.get("type") or ""
        description = name or "PayPal Transaction"
        if tx_type and tx_type != description:
            description = f"{tx_type}: {name}"

        if row.get("id"):
            external_id = f"paypal-{row['id']}"
        else:
            external_id = self._row_id(tx_date, seen, name, amount, tx_type)

        return FetchedTransaction(
            external_id=external_id,
            date=tx_date,
            description=description,
            amount=amount,
            beneficiary=name or None,
            currency=_currency_of(amount_text),
            raw_data={
                "type": tx_type or None,
                "status": row.get("status"),
                "original_amount": amount_text,
                "original_date": row.get("date"),
            },
        )

    # ------------------------------------------------------------------
    # Offline import
    # ------------------------------------------------------------------

    def import_text(self, text: str, date_range: DateRange | None = None) -> ImportResult:
        """Parse activity text copied from the PayPal app or website."""
        result = self.text_parser.parse(text, date_range)
        logger.info("Imported %d PayPal transactions from text", len(result.transactions))
        return result
