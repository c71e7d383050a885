"""
Gebührenfrei Connector — the Advanzia "Gebührenfrei Mastercard Gold" card portal.

Advanzia offers no API, so the card portal is driven in a browser. Login may
ask the user to choose between an SMS code and an app approval; SMS is
preferred because it can be answered from the CLI.
"""

from __future__ import annotations

import logging
from datetime import date

from playwright.async_api import Page

from finsync.browser.selectors import CellText, FieldExtractor, SelectorText, chain
from finsync.connectors.browser_connector import BrowserPortalConnector
from finsync.errors import RowParseError
from finsync.models.connector import ConnectorType, MFAChallenge, MFAType
from finsync.models.transaction import AccountInfo, DateRange, FetchedTransaction
from finsync.parsers.amounts import extract_amount, parse_amount, parse_date

logger = logging.getLogger("finsync.connectors.gebuhrenfrei")

GEBUHRENFREI_BASE_URL = "https://mein.gebuhrenfrei.com"
GEBUHRENFREI_LOGIN_URL = f"{GEBUHRENFREI_BASE_URL}/meine.karte-Login/"
GEBUHRENFREI_TRANSACTIONS_URL = f"{GEBUHRENFREI_BASE_URL}/transactions"

USERNAME_INPUT = chain('#username, input[name="username"], input[type="text"]')
PASSWORD_INPUT = chain('#password, input[name="password"], input[type="password"]')
LOGIN_BUTTON = chain('button[type="submit"], .login-button, #loginButton')

MFA_SMS_OPTION = chain('.sms-option, [data-method="sms"], button[data-method="sms"]')
MFA_APP_OPTION = chain('.app-option, [data-method="app"], button[data-method="app"]')
MFA_CODE_INPUT = chain('#code, input[name="code"], input[name="otp"], .otp-input')

BALANCE = chain('.balance, .current-balance, [data-testid="balance"]')
CREDIT_LIMIT = chain('.credit-limit, [data-testid="credit-limit"]')
CARD_NUMBER = chain('.card-number, [data-testid="card-number"]')

TRANSACTIONS_LINK = chain('a[href*="transaction"], .nav-transactions')
DATE_FROM = chain('input[name="fromDate"], #fromDate')
DATE_TO = chain('input[name="toDate"], #toDate')
APPLY_FILTER = chain('.apply-filter, button[type="submit"]')

DEFAULT_SMS_MESSAGE = "Bitte geben Sie den Bestätigungscode ein, der an Ihre Handynummer gesendet wurde."
DEFAULT_APP_MESSAGE = "Bitte bestätigen Sie die Anmeldung in der Advanzia App."


def _german_date(value: date) -> str:
    return value.strftime("%d.%m.%Y")


class GebuhrenfreiConnector(BrowserPortalConnector):
    """Fetch card transactions from the Advanzia portal."""

    name = "gebuhrenfrei"
    description = "Gebührenfrei Mastercard (Advanzia) via browser automation"
    connector_type = ConnectorType.GEBUHRENFREI

    login_url = GEBUHRENFREI_LOGIN_URL
    login_markers = ("-Login", "/login")

    logged_in = chain(
        '.dashboard, .account-overview, [data-testid="dashboard"], '
        '.logout-button, [data-testid="user-menu"]'
    )
    error_message = chain('.error-message, .alert-danger, [data-testid="error"], .login-error')
    password_field = PASSWORD_INPUT
    mfa_input = MFA_CODE_INPUT
    mfa_indicators = chain(
        '#code, input[name="code"], input[name="otp"], .otp-input, '
        '.sms-option, [data-method="sms"], .app-option, [data-method="app"]'
    )
    mfa_submit = chain('button[type="submit"], .submit-button, #verifyButton')
    mfa_message = chain(".mfa-message, .verification-message, .otp-description")
    session_indicators = chain(
        '.dashboard, .account-overview, [data-testid="dashboard"], .logout-button, '
        '[data-testid="user-menu"], .transactions-list, .transaction-table'
    )

    row_selector = chain(".transaction-row, tr[data-transaction], tbody tr")
    row_fields = {
        "date": FieldExtractor([SelectorText(chain(".transaction-date")), CellText(1)]),
        "description": FieldExtractor([SelectorText(chain(".transaction-description")), CellText(2)]),
        "amount": FieldExtractor([SelectorText(chain(".transaction-amount")), CellText(3)]),
        "status": FieldExtractor([SelectorText(chain(".transaction-status")), CellText(4)]),
    }
    load_more = chain('.load-more, [class*="load-more"], button.more')
    next_page = chain('.pagination-next, .next-page, [aria-label="Next"]')

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def _fill_login(self, page: Page) -> None:
        if await self.browser.type_like_human(page, USERNAME_INPUT, self.user_id or ""):
            await self.browser.random_delay()
        if await self.browser.type_like_human(page, PASSWORD_INPUT, self.secret):
            await self.browser.random_delay()
        if await self.browser.click(page, LOGIN_BUTTON):
            logger.info("Gebührenfrei login form submitted")

    async def _detect_challenge(self, page: Page) -> MFAChallenge | None:
        if not await MFA_CODE_INPUT.exists(page) and await MFA_SMS_OPTION.exists(page):
            logger.info("Gebührenfrei offers a factor choice, selecting SMS")
            await self.browser.click(page, MFA_SMS_OPTION)
            await self.browser.wait_for_settle(page)

        expires_at = self._challenge_expiry(int(self.config.polling.timeout_seconds))
        if await MFA_CODE_INPUT.exists(page):
            return MFAChallenge(
                type=MFAType.SMS,
                message=await self.mfa_message.text(page) or DEFAULT_SMS_MESSAGE,
                decoupled=False,
                expires_at=expires_at,
            )
        if await MFA_APP_OPTION.exists(page):
            return MFAChallenge(
                type=MFAType.PUSH,
                message=DEFAULT_APP_MESSAGE,
                decoupled=True,
                expires_at=expires_at,
            )
        return None

    async def _read_accounts(self, page: Page) -> list[AccountInfo]:
        card_number = await CARD_NUMBER.text(page)
        return [
            AccountInfo(
                account_number=card_number or "Mastercard Gold",
                account_type="credit_card",
                currency="EUR",
                balance=extract_amount(await BALANCE.text(page)),
                credit_limit=extract_amount(await CREDIT_LIMIT.text(page)),
            )
        ]

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------

    async def _open_activity(self, page: Page, date_range: DateRange) -> bool:
        if await self.browser.click(page, TRANSACTIONS_LINK):
            await self.browser.wait_for_settle(page)
        else:
            await self.browser.navigate(page, GEBUHRENFREI_TRANSACTIONS_URL)

        if not (await DATE_FROM.exists(page) and await DATE_TO.exists(page)):
            return False
        await self.browser.type_like_human(page, DATE_FROM, _german_date(date_range.start))
        await self.browser.random_delay(300, 500)
        await self.browser.type_like_human(page, DATE_TO, _german_date(date_range.end))
        await self.browser.random_delay(300, 500)
        if await self.browser.click(page, APPLY_FILTER):
            await self.browser.wait_for_settle(page)
        return True

    def _to_transaction(self, row: dict[str, str | None], seen: dict[str, int]) -> FetchedTransaction | None:
        description = row.get("description") or ""
        amount_text = row.get("amount") or ""
        if not description and not amount_text:
            return None

        tx_date = parse_date(row.get("date"))
        if tx_date is None:
            raise RowParseError(f"Invalid date {row.get('date')!r}")
        amount = parse_amount(amount_text)
        if amount is None:
            raise RowParseError(f"Invalid amount {amount_text!r}")

        return FetchedTransaction(
            external_id=self._row_id(tx_date, seen, description, amount, row.get("status")),
            date=tx_date,
            description=description or "Mastercard Transaction",
            amount=amount,
            beneficiary=description or None,
            currency="EUR",
            raw_data={
                "status": row.get("status"),
                "original_amount": amount_text,
                "original_date": row.get("date"),
            },
        )
