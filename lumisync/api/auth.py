"""
The federated (ADFS) login sequence, written as an explicit state machine.

    START -> FORM_OBTAINED -> CREDENTIALS_SUBMITTED -> AUTHENTICATED
                  any step may instead end in FAILED

Each transition is one method returning a typed outcome that the next
transition consumes, so steps cannot be reordered or skipped. Errors carry the
state in which they happened.
"""

import logging
import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import NoReturn, Optional
from urllib.parse import parse_qs, urlencode, urljoin, urlsplit

from bs4 import BeautifulSoup

from lumisync.exceptions import (
    AuthError,
    BadCredentialsError,
    LumiSyncError,
    MalformedLoginFormError,
    ProtocolError,
    UnexpectedFlowError,
)
from lumisync.models.config import Credentials
from lumisync.models.remote import ApiToken

from .transport import HttpResponse, Transport

log = logging.getLogger(__name__)

ADFS_OAUTH2_URL = "https://vafs.nus.edu.sg/adfs/oauth2/authorize"
ADFS_CLIENT_ID = "E10493A3B1024F14BDC7D0D8B9F649E9-234390"
ADFS_RESOURCE_TYPE = "sg_edu_nus_oauth"
ADFS_REDIRECT_URI = "https://luminus.nus.edu.sg/auth/callback"
API_BASE_URL = "https://luminus.nus.edu.sg/v2/api/"
TOKEN_URL = urljoin(API_BASE_URL, "login/adfstoken")
OCP_APIM_SUBSCRIPTION_KEY = "6963c200ca9440de8fa1eede730d8f7e"
OCP_APIM_SUBSCRIPTION_KEY_HEADER = "Ocp-Apim-Subscription-Key"

MAX_REDIRECTS = 5


class LoginState(Enum):
    START = "start"
    FORM_OBTAINED = "form obtained"
    CREDENTIALS_SUBMITTED = "credentials submitted"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


@dataclass(frozen=True)
class FormObtained:
    """The identity provider's login form: where to post, and what to echo back."""

    action: str
    hidden_fields: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CredentialsSubmitted:
    code: str = field(repr=False)


@dataclass(frozen=True)
class Authenticated:
    token: str = field(repr=False)
    expires_in: Optional[int] = None


def build_auth_url(nonce: Optional[str] = None) -> str:
    nonce = nonce or secrets.token_hex(16)
    query = urlencode(
        {
            "response_type": "code",
            "client_id": ADFS_CLIENT_ID,
            "state": nonce,
            "redirect_uri": ADFS_REDIRECT_URI,
            "scope": "",
            "resource": ADFS_RESOURCE_TYPE,
            "nonce": nonce,
        }
    )
    return f"{ADFS_OAUTH2_URL}?{query}"


def parse_login_form(html: str, page_url: str) -> Optional[FormObtained]:
    """
    Finds the form holding the password field and returns its absolute action
    URL plus its hidden inputs, or ``None`` when the page has no such form.
    """
    soup = BeautifulSoup(html, "html.parser")
    for form in soup.find_all("form"):
        names = {i.get("name") for i in form.find_all("input") if i.get("name")}
        if "UserName" not in names or "Password" not in names:
            continue
        hidden = {
            i["name"]: i.get("value", "")
            for i in form.find_all("input", attrs={"type": "hidden"})
            if i.get("name")
        }
        action = urljoin(page_url, form.get("action") or page_url)
        return FormObtained(action=action, hidden_fields=hidden)
    return None


def has_password_form(html: str) -> bool:
    soup = BeautifulSoup(html, "html.parser")
    return soup.find("input", attrs={"name": "Password"}) is not None


class LoginFlow:
    """
    One login attempt. A flow is single use: once it reached AUTHENTICATED or
    FAILED a new ``LoginFlow`` has to be created.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        auth_url: Optional[str] = None,
        redirect_uri: str = ADFS_REDIRECT_URI,
        token_url: str = TOKEN_URL,
        max_redirects: int = MAX_REDIRECTS,
    ):
        self._transport = transport
        self._auth_url = auth_url or build_auth_url()
        self._redirect_uri = redirect_uri
        self._token_url = token_url
        self._max_redirects = max_redirects
        self.state = LoginState.START

    def _expect(self, state: LoginState) -> None:
        if self.state is not state:
            self._fail(
                UnexpectedFlowError,
                f"Login step called in state '{self.state.value}', "
                f"expected '{state.value}'",
            )

    def _fail(self, error_cls: type[AuthError], message: str) -> NoReturn:
        stage = self.state.value
        self.state = LoginState.FAILED
        raise error_cls(message, stage=stage)

    async def obtain_form(self) -> FormObtained:
        self._expect(LoginState.START)
        try:
            response = await self._transport.request("GET", self._auth_url)
        except LumiSyncError:
            self.state = LoginState.FAILED
            raise

        if not response.ok:
            self._fail(
                UnexpectedFlowError,
                f"Identity provider answered HTTP {response.status} to the login page",
            )
        form = parse_login_form(response.text(), response.url)
        if form is None:
            self._fail(MalformedLoginFormError, "No username/password form on the login page")

        log.debug(f"Obtained login form posting to {urlsplit(form.action).netloc}")
        self.state = LoginState.FORM_OBTAINED
        return form

    async def submit_credentials(
        self, form: FormObtained, credentials: Credentials
    ) -> CredentialsSubmitted:
        self._expect(LoginState.FORM_OBTAINED)
        payload = dict(form.hidden_fields)
        payload.update(
            {
                "UserName": credentials.username,
                "Password": credentials.password.get_secret_value(),
                "AuthMethod": "FormsAuthentication",
            }
        )
        try:
            response = await self._transport.request(
                "POST", form.action, data=payload, allow_redirects=False
            )
            code = await self._follow_to_callback(response)
        except LumiSyncError:
            if self.state is not LoginState.FAILED:
                self.state = LoginState.FAILED
            raise

        self.state = LoginState.CREDENTIALS_SUBMITTED
        return CredentialsSubmitted(code=code)

    async def _follow_to_callback(self, response: HttpResponse) -> str:
        """Walks the redirect chain by hand until it reaches the redirect uri."""
        hops = 0
        while True:
            if not response.is_redirect:
                if response.ok and has_password_form(response.text()):
                    self._fail(BadCredentialsError, "Invalid username or password")
                self._fail(
                    UnexpectedFlowError,
                    f"Unexpected redirect target (HTTP {response.status} "
                    f"at {urlsplit(response.url).netloc})",
                )

            location = response.location
            if not location:
                self._fail(UnexpectedFlowError, "Redirect without a Location header")
            target = urljoin(response.url, location)

            if target.startswith(self._redirect_uri):
                codes = parse_qs(urlsplit(target).query).get("code")
                if not codes or not codes[0]:
                    self._fail(
                        UnexpectedFlowError,
                        "Unknown authentication failure (no code returned)",
                    )
                return codes[0]

            hops += 1
            if hops > self._max_redirects:
                self._fail(
                    UnexpectedFlowError,
                    f"Unexpected redirect target (more than {self._max_redirects} "
                    f"redirects)",
                )
            log.debug(f"Following login redirect to {urlsplit(target).netloc}")
            response = await self._transport.request(
                "GET", target, allow_redirects=False
            )

    async def exchange_code(self, submitted: CredentialsSubmitted) -> Authenticated:
        self._expect(LoginState.CREDENTIALS_SUBMITTED)
        form = {
            "grant_type": "authorization_code",
            "client_id": ADFS_CLIENT_ID,
            "resource": ADFS_RESOURCE_TYPE,
            "code": submitted.code,
            "redirect_uri": self._redirect_uri,
        }
        try:
            response = await self._transport.request(
                "POST",
                self._token_url,
                data=form,
                headers={OCP_APIM_SUBSCRIPTION_KEY_HEADER: OCP_APIM_SUBSCRIPTION_KEY},
            )
        except LumiSyncError:
            self.state = LoginState.FAILED
            raise

        if not response.ok:
            self._fail(
                UnexpectedFlowError,
                f"Unknown authentication failure (token exchange answered "
                f"HTTP {response.status})",
            )
        try:
            payload = response.json()
            token = ApiToken.model_validate(payload)
        except (ProtocolError, ValueError):
            self._fail(
                UnexpectedFlowError, "Failed to deserialise token exchange response"
            )

        self.state = LoginState.AUTHENTICATED
        return Authenticated(token=token.access_token, expires_in=token.expires_in)

    async def run(self, credentials: Credentials) -> Authenticated:
        """Drives all three transitions in order."""
        form = await self.obtain_form()
        submitted = await self.submit_credentials(form, credentials)
        return await self.exchange_code(submitted)
