from __future__ import annotations

import logging
import queue
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import msal

from .audit import JsonAuditLogger
from .config import AuthenticationSettings
from .models import Session, TokenAcquisitionResult

logger = logging.getLogger(__name__)

NOT_AUTHENTICATED = "not_authenticated"
NO_ACCOUNTS = "no_accounts"
CONSENT_REQUIRED = "consent_required"
MFA_REQUIRED = "mfa_required"
BASIC_ACTION = "basic_action"
UI_REQUIRED = "ui_required"
EXCEPTION = "exception"
INTERACTIVE_FAILED = "interactive_failed"
MFA_UI_REQUIRED = "mfa_ui_required"
MFA_FAILED = "mfa_failed"

SUBSCRIBER_QUEUE_SIZE = 16

# Failures a user can act on by signing in again or asking an administrator.
AUTH_CHALLENGE_KINDS = frozenset({MFA_REQUIRED, CONSENT_REQUIRED, BASIC_ACTION, UI_REQUIRED})

# OAuth error codes that mean the cached credentials cannot be used without the user.
_UI_REQUIRED_ERRORS = frozenset(
    {"interaction_required", "login_required", "consent_required", "invalid_grant", "mfa_required", "basic_action"}
)

_CONSENT_MARKERS = ("aadsts65001", "consent_required")
_MFA_MARKERS = ("aadsts50079", "aadsts50076", "mfa_required", "multi-factor authentication")
_BASIC_ACTION_MARKERS = ("aadsts50158", "basic_action")

AppFactory = Callable[[str], Any]
DeviceCodeCallback = Callable[[str, str], None]


class TokenAcquisitionError(RuntimeError):
    """MSAL returned an error payload instead of a token."""

    def __init__(self, code: Optional[str], message: str, suberror: Optional[str] = None):
        super().__init__(message)
        self.code = code or "unknown_error"
        self.suberror = suberror
        self.message = message


class InteractionRequiredError(TokenAcquisitionError):
    """Cached credentials cannot satisfy the request without user interaction."""


def classify_challenge(code: Optional[str], message: Optional[str], suberror: Optional[str] = None) -> str:
    """Map a UI-required error to consent, MFA, basic action or generic UI kinds.

    Checks run in priority order against the lower-cased error code, sub-error
    and description.
    """
    haystack = " ".join(part for part in (code, suberror, message) if part).lower()
    if any(marker in haystack for marker in _CONSENT_MARKERS):
        return CONSENT_REQUIRED
    if any(marker in haystack for marker in _MFA_MARKERS):
        return MFA_REQUIRED
    if any(marker in haystack for marker in _BASIC_ACTION_MARKERS):
        return BASIC_ACTION
    return UI_REQUIRED


def _checked(result: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not result:
        raise InteractionRequiredError("interaction_required", "No cached token is available")
    if "access_token" in result:
        return result

    code = result.get("error")
    suberror = result.get("suberror")
    message = result.get("error_description") or code or "Token acquisition failed"
    if code in _UI_REQUIRED_ERRORS or suberror:
        raise InteractionRequiredError(code, message, suberror)
    raise TokenAcquisitionError(code, message, suberror)


class AuthenticationService:
    """Signs the user in and hands out Azure Management tokens per tenant.

    One ``msal.PublicClientApplication`` is kept per authority, all of them
    sharing a single in-memory token cache, so an account signed in through
    the default authority can silently obtain tokens for any tenant it can
    reach. Token failures are returned as ``TokenAcquisitionResult`` values;
    only a client that cannot be constructed raises.
    """

    def __init__(
        self,
        settings: AuthenticationSettings,
        scopes: Iterable[str],
        audit_logger: Optional[JsonAuditLogger] = None,
        app_factory: Optional[AppFactory] = None,
        token_cache: Optional[msal.TokenCache] = None,
    ):
        self.settings = settings
        self.scopes = list(scopes)
        self.audit = audit_logger or JsonAuditLogger()
        self._cache = token_cache if token_cache is not None else msal.TokenCache()
        self._app_factory = app_factory or self._build_app
        self._apps: Dict[str, Any] = {}
        self._apps_lock = Lock()
        self._session = Session.unauthenticated()
        self._subscribers: List["queue.Queue[Session]"] = []
        self._subscribers_lock = Lock()

        try:
            self._app_for(None)
        except Exception:
            logger.exception("Failed to initialize MSAL client for %s", settings.authority)
            raise
        logger.info("MSAL client initialized for %s", settings.authority)

    @property
    def session(self) -> Session:
        return self._session

    def subscribe(self, maxsize: int = SUBSCRIBER_QUEUE_SIZE) -> "queue.Queue[Session]":
        """Return a queue that receives every new session snapshot.

        The queue holds at most ``maxsize`` snapshots; when a subscriber falls
        behind, the oldest one is dropped so the latest session is always there.
        """
        channel: "queue.Queue[Session]" = queue.Queue(maxsize=maxsize)
        with self._subscribers_lock:
            self._subscribers.append(channel)
        return channel

    def unsubscribe(self, channel: "queue.Queue[Session]") -> None:
        with self._subscribers_lock:
            if channel in self._subscribers:
                self._subscribers.remove(channel)

    def admin_consent_url(self) -> str:
        return f"{self.settings.authority_host}/common/adminconsent?client_id={self.settings.client_id}"

    # Sign-in / sign-out

    def sign_in_interactive(self) -> Session:
        logger.info("Starting interactive sign-in")
        try:
            app = self._app_for(None)
            accounts = app.get_accounts()
            result: Optional[Dict[str, Any]] = None
            if accounts:
                try:
                    result = _checked(app.acquire_token_silent_with_error(self.scopes, account=accounts[0]))
                    logger.info("Silent authentication successful")
                except InteractionRequiredError as exc:
                    logger.info("Cached account needs interaction: %s", exc.message)
            if result is None:
                result = self._interactive(app, prompt=msal.Prompt.SELECT_ACCOUNT)
            return self._signed_in(result, method="interactive", account=accounts[0] if accounts else None)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Interactive sign-in failed")
            self.audit.error("sign_in_failed", method="interactive", error=str(exc))
            return self._signed_out()

    def sign_in_with_device_code(self, display_callback: DeviceCodeCallback) -> Session:
        logger.info("Starting device code sign-in")
        try:
            app = self._app_for(None)
            flow = app.initiate_device_flow(scopes=self.scopes)
            if "user_code" not in flow:
                raise TokenAcquisitionError(
                    flow.get("error"), flow.get("error_description") or "Could not start device code flow"
                )
            verification_url = flow.get("verification_uri") or flow.get("verification_url", "")
            display_callback(flow["user_code"], verification_url)
            logger.info("Device code displayed to user")
            result = _checked(app.acquire_token_by_device_flow(flow))
            return self._signed_in(result, method="device_code")
        except Exception as exc:  # noqa: BLE001
            logger.exception("Device code sign-in failed")
            self.audit.error("sign_in_failed", method="device_code", error=str(exc))
            return self._signed_out()

    def try_sign_in_silently(self) -> Session:
        logger.info("Attempting silent sign-in")
        try:
            app = self._app_for(None)
            accounts = app.get_accounts()
            if not accounts:
                logger.info("No cached accounts found")
                return self._session
            result = _checked(app.acquire_token_silent_with_error(self.scopes, account=accounts[0]))
            return self._signed_in(result, method="silent", account=accounts[0])
        except InteractionRequiredError:
            logger.info("Silent sign-in requires user interaction")
            return self._session
        except Exception:  # noqa: BLE001
            logger.exception("Silent sign-in failed")
            return self._session

    def sign_out(self) -> None:
        logger.info("Signing out user")
        try:
            app = self._app_for(None)
            for account in app.get_accounts():
                try:
                    app.remove_account(account)
                except Exception:  # noqa: BLE001
                    logger.exception("Failed to remove cached account %s", account.get("username"))
        except Exception:  # noqa: BLE001
            logger.exception("Sign out failed")
        previous = self._session.principal_name
        self._signed_out()
        self.audit.info("signed_out", principal=previous)

    # Token supply

    def get_access_token(
        self,
        scopes: Optional[Iterable[str]] = None,
        tenant_id: Optional[str] = None,
        allow_interactive: bool = True,
    ) -> TokenAcquisitionResult:
        scopes = list(scopes or self.scopes)
        target = tenant_id or "default"
        try:
            if not self._session.is_authenticated:
                return TokenAcquisitionResult.failure(NOT_AUTHENTICATED, "User is not authenticated.")

            app = self._app_for(tenant_id)
            accounts = app.get_accounts()
            if not accounts:
                return TokenAcquisitionResult.failure(NO_ACCOUNTS, "No accounts found in MSAL cache.")

            try:
                result = _checked(app.acquire_token_silent_with_error(scopes, account=accounts[0]))
                return TokenAcquisitionResult.ok(result["access_token"])
            except InteractionRequiredError as exc:
                outcome = self._resolve_challenge(app, scopes, target, exc, allow_interactive)
                if not outcome.success:
                    self.audit.warning(
                        "token_failed",
                        tenant_id=tenant_id,
                        error_kind=outcome.error_kind,
                        error=outcome.error_message,
                    )
                return outcome
        except Exception as exc:  # noqa: BLE001
            logger.exception("Failed to get access token for tenant %s", target)
            self.audit.error("token_failed", tenant_id=tenant_id, error_kind=EXCEPTION, error=str(exc))
            return TokenAcquisitionResult.failure(
                EXCEPTION, f"Failed to get access token for tenant {target}: {exc}"
            )

    def interactive_auth(self, tenant_id: Optional[str] = None) -> TokenAcquisitionResult:
        target = tenant_id or "default"
        try:
            result = self._interactive(
                self._app_for(tenant_id), scopes=self.scopes, prompt=msal.Prompt.SELECT_ACCOUNT
            )
            logger.info("Interactive authentication successful for tenant %s", target)
            return TokenAcquisitionResult.ok(result["access_token"])
        except Exception as exc:  # noqa: BLE001
            logger.error("Interactive authentication failed for tenant %s: %s", target, exc)
            return TokenAcquisitionResult.failure(
                INTERACTIVE_FAILED, f"Interactive authentication failed for tenant {target}: {exc}"
            )

    def handle_mfa_challenge(self, tenant_id: str, hint: Optional[str] = None) -> TokenAcquisitionResult:
        """Force a fresh login so the tenant's MFA policy is evaluated again."""
        logger.info("Handling MFA requirement for tenant %s", tenant_id)
        try:
            result = self._interactive(
                self._app_for(tenant_id),
                scopes=self.scopes,
                prompt=msal.Prompt.LOGIN,
                login_hint=hint or self._session.principal_name,
                domain_hint="organizations",
            )
            logger.info("MFA authentication successful for tenant %s", tenant_id)
            return TokenAcquisitionResult.ok(result["access_token"])
        except InteractionRequiredError as exc:
            return TokenAcquisitionResult.failure(
                MFA_UI_REQUIRED,
                f"MFA authentication failed for tenant {tenant_id}. "
                f"Additional UI interaction required: {exc.message}",
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("MFA authentication failed for tenant %s: %s", tenant_id, exc)
            return TokenAcquisitionResult.failure(
                MFA_FAILED, f"MFA authentication failed for tenant {tenant_id}: {exc}"
            )

    # Internals

    def _resolve_challenge(
        self,
        app: Any,
        scopes: List[str],
        target: str,
        error: InteractionRequiredError,
        allow_interactive: bool,
    ) -> TokenAcquisitionResult:
        kind = classify_challenge(error.code, error.message, error.suberror)

        if kind == CONSENT_REQUIRED:
            consent_url = self.admin_consent_url()
            logger.warning("Consent required for tenant %s; admin must grant consent at %s", target, consent_url)
            return TokenAcquisitionResult.failure(
                CONSENT_REQUIRED,
                f"Consent required for tenant {target}. Admin must grant consent: {consent_url}",
                action_url=consent_url,
            )

        if kind == BASIC_ACTION:
            return TokenAcquisitionResult.failure(
                BASIC_ACTION,
                f"External security challenge not satisfied for tenant {target}. "
                "User must complete additional authentication.",
            )

        if not allow_interactive:
            label = "MFA required" if kind == MFA_REQUIRED else "Silent token acquisition failed"
            return TokenAcquisitionResult.failure(kind, f"{label} for tenant {target}: {error.message}")

        logger.warning("Silent token acquisition failed for tenant %s (%s); trying interactive", target, kind)
        token, failure = self._escalate_once(app, scopes)
        if token is not None:
            return TokenAcquisitionResult.ok(token)
        if kind == MFA_REQUIRED:
            return TokenAcquisitionResult.failure(
                MFA_REQUIRED,
                f"MFA required for tenant {target}. Interactive authentication failed: {failure}",
            )
        return TokenAcquisitionResult.failure(
            UI_REQUIRED,
            f"Silent token acquisition failed for tenant {target}: {error.message}. "
            f"Interactive authentication also failed: {failure}",
        )

    def _escalate_once(self, app: Any, scopes: List[str]) -> Tuple[Optional[str], Optional[str]]:
        try:
            result = self._interactive(app, scopes=scopes, prompt=msal.Prompt.SELECT_ACCOUNT)
        except Exception as exc:  # noqa: BLE001
            return None, str(exc)
        return result["access_token"], None

    def _interactive(
        self,
        app: Any,
        scopes: Optional[List[str]] = None,
        prompt: Optional[str] = None,
        login_hint: Optional[str] = None,
        domain_hint: Optional[str] = None,
    ) -> Dict[str, Any]:
        result = app.acquire_token_interactive(
            scopes or self.scopes,
            prompt=prompt,
            login_hint=login_hint,
            domain_hint=domain_hint,
            port=self.settings.redirect_port,
            timeout=self.settings.interactive_timeout_seconds,
        )
        return _checked(result)

    def _app_for(self, tenant_id: Optional[str]) -> Any:
        authority = self.settings.authority_for(tenant_id)
        with self._apps_lock:
            app = self._apps.get(authority)
            if app is None:
                app = self._app_factory(authority)
                self._apps[authority] = app
            return app

    def _build_app(self, authority: str) -> msal.PublicClientApplication:
        return msal.PublicClientApplication(
            client_id=self.settings.client_id,
            authority=authority,
            token_cache=self._cache,
        )

    def _signed_in(
        self, result: Dict[str, Any], method: str, account: Optional[Dict[str, Any]] = None
    ) -> Session:
        claims = result.get("id_token_claims") or {}
        account = account or {}
        principal = claims.get("preferred_username") or claims.get("upn") or account.get("username")
        home_tenant = claims.get("tid")
        if not home_tenant and account.get("home_account_id"):
            home_tenant = account["home_account_id"].split(".")[-1]

        now = datetime.now(timezone.utc)
        expires_in = result.get("expires_in")
        session = Session(
            is_authenticated=True,
            principal_name=principal,
            display_name=claims.get("name") or principal,
            home_tenant_id=home_tenant,
            last_auth_time=now,
            token_expiry=now + timedelta(seconds=int(expires_in)) if expires_in else None,
        )
        self._publish(session)
        self.audit.info("signed_in", tenant_id=home_tenant, principal=principal, method=method)
        return session

    def _signed_out(self) -> Session:
        session = Session.unauthenticated()
        self._publish(session)
        return session

    def _publish(self, session: Session) -> None:
        self._session = session
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for channel in subscribers:
            try:
                channel.put_nowait(session)
            except queue.Full:
                try:
                    channel.get_nowait()
                except queue.Empty:
                    pass
                channel.put_nowait(session)
