# contact-intake/app.py
from __future__ import annotations

# pyright: reportMissingImports=false
from dotenv import load_dotenv

load_dotenv()

import csv
import ipaddress
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, Literal, Mapping, Optional, Protocol, Sequence, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from email_validator import EmailNotValidError, validate_email
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, Response
from filelock import FileLock, Timeout
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from render import (
    UntrustedText,
    esc,
    render_error,
    render_server_error,
    render_thanks,
)


# ============================================================
# Logging
# ============================================================

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s"
)
logger = logging.getLogger(__name__)

# ============================================================
# Config
# ============================================================

APP_DIR = Path(__file__).resolve().parent

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


# Settings: single source of truth
@dataclass
class Settings:
    data_dir: Path
    ledger_filename: str
    timezone: str
    site_name: str
    back_url: str
    # seconds; -1 waits forever
    lock_timeout: float
    csp_mode: Literal["off", "report", "enforce"]
    trusted_proxy_cidrs: tuple[IPNetwork, ...]

    @property
    def ledger_path(self) -> Path:
        return self.data_dir / self.ledger_filename


_SETTINGS: Optional[Settings] = None


def load_settings() -> Settings:
    """Load and validate settings from environment exactly once."""
    data_dir = Path(os.getenv("DATA_DIR") or str(APP_DIR / "data"))

    ledger_filename = (os.getenv("LEDGER_FILENAME") or "inquiries.csv").strip()
    if not ledger_filename or "/" in ledger_filename or "\\" in ledger_filename:
        raise RuntimeError(f"LEDGER_FILENAME must be a plain file name (got {ledger_filename!r})")

    timezone = (os.getenv("TIMEZONE") or "Asia/Tokyo").strip()
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        raise RuntimeError(f"TIMEZONE is not a known IANA zone (got {timezone!r})")

    site_name = (os.getenv("SITE_NAME") or "株式会社Jecコンサルティング").strip()
    back_url = (os.getenv("BACK_URL") or "index.html#contact").strip()

    raw_timeout = (os.getenv("LEDGER_LOCK_TIMEOUT") or "-1").strip()
    try:
        lock_timeout = float(raw_timeout)
    except ValueError:
        raise RuntimeError(f"LEDGER_LOCK_TIMEOUT must be a number of seconds (got {raw_timeout!r})")

    csp_mode = (os.getenv("CSP_MODE") or "off").strip().lower()
    if csp_mode not in ("off", "report", "enforce"):
        raise RuntimeError(f"Invalid CSP_MODE: {csp_mode}. Must be off/report/enforce")

    cidrs_raw = os.getenv("TRUSTED_PROXY_CIDRS", "127.0.0.1/32,::1/128")
    cidrs: list[IPNetwork] = []
    for c in (c.strip() for c in cidrs_raw.split(",")):
        if not c:
            continue
        try:
            cidrs.append(ipaddress.ip_network(c, strict=False))
        except ValueError:
            raise RuntimeError(f"TRUSTED_PROXY_CIDRS contains an invalid network: {c!r}")

    return Settings(
        data_dir=data_dir,
        ledger_filename=ledger_filename,
        timezone=timezone,
        site_name=site_name,
        back_url=back_url,
        lock_timeout=lock_timeout,
        csp_mode=csp_mode,  # type: ignore[arg-type]
        trusted_proxy_cidrs=tuple(cidrs),
    )


def get_settings() -> Settings:
    if _SETTINGS is None:
        raise RuntimeError("Settings not loaded yet")
    return _SETTINGS


def init_settings() -> None:
    global _SETTINGS
    _SETTINGS = load_settings()


# ============================================================
# Errors
# ============================================================

GENERIC_FAILURE = "送信に失敗しました。"


class IntakeError(Exception):
    """A terminal rejection of one submission. Rendered as the error page."""

    message = GENERIC_FAILURE
    status_code = 400

    def __init__(self, message: Optional[str] = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)


class MethodNotAllowed(IntakeError):
    message = "不正なアクセスです。"


class BotSuspected(IntakeError):
    # Same text as any other failure: the honeypot must not be revealed.
    message = GENERIC_FAILURE


class MissingRequiredField(IntakeError):
    message = "必須項目が未入力です。"


class InvalidEmailFormat(IntakeError):
    message = "メールアドレスの形式が正しくありません。"


class StorageDirectoryUnavailable(IntakeError):
    message = "サーバ側で保存フォルダを作成できませんでした。"


class FileOpenFailure(IntakeError):
    message = "CSVファイルを開けませんでした。"


class LockAcquisitionFailure(IntakeError):
    message = "保存処理に失敗しました（ロック）。"


# ============================================================
# Normalization / Validation
# ============================================================

# max length per field, counted in code points
FIELD_LIMITS = {
    "name": 120,
    "email": 160,
    "tel": 40,
    "type": 80,
    "message": 4000,
}
REQUIRED_FIELDS = ("name", "email", "type", "message")
HONEYPOT_FIELD = "company"

def normalize(s: str, max_len: int) -> str:
    """Trim, unify line endings to LF, then cap at max_len code points."""
    s = s.strip()
    s = s.replace("\r\n", "\n").replace("\r", "\n")
    if len(s) > max_len:
        s = s[:max_len]
    return s


def is_valid_email(s: str) -> bool:
    """Bare addr-spec only: display-name forms like `Name <a@example.com>` are rejected."""
    try:
        validate_email(s, check_deliverability=False, allow_display_name=False)
    except EmailNotValidError:
        return False
    return True


@dataclass(frozen=True)
class Submission:
    name: UntrustedText
    email: UntrustedText
    tel: UntrustedText
    inquiry_type: UntrustedText
    message: UntrustedText

    def as_row(self, created_at: str, ip: str, user_agent: str) -> list[str]:
        """Row in LEDGER_HEADER order."""
        return [
            created_at,
            self.name,
            self.email,
            self.tel,
            self.inquiry_type,
            self.message,
            ip,
            user_agent,
        ]


class SpamFilter(Protocol):
    def is_spam(self, form: Mapping[str, str]) -> bool: ...


@dataclass(frozen=True)
class HoneypotFilter:
    """Hidden field that humans leave empty. Any non-blank value marks a bot."""

    field: str = HONEYPOT_FIELD

    def is_spam(self, form: Mapping[str, str]) -> bool:
        return (form.get(self.field) or "").strip() != ""


DEFAULT_SPAM_FILTERS: tuple[SpamFilter, ...] = (HoneypotFilter(),)


def parse_submission(
    form: Mapping[str, str],
    spam_filters: Sequence[SpamFilter] = DEFAULT_SPAM_FILTERS,
) -> Submission:
    """
    Run the bot check and field validation over raw form values.

    Order matters: bot check first, then required fields, then email syntax.
    The first failure raises; nothing is written before this returns.
    """
    for f in spam_filters:
        if f.is_spam(form):
            raise BotSuspected()

    values = {
        key: normalize(form.get(key) or "", limit)
        for key, limit in FIELD_LIMITS.items()
    }

    if any(values[key] == "" for key in REQUIRED_FIELDS):
        raise MissingRequiredField()
    if not is_valid_email(values["email"]):
        raise InvalidEmailFormat()

    return Submission(
        name=UntrustedText(values["name"]),
        email=UntrustedText(values["email"]),
        tel=UntrustedText(values["tel"]),
        inquiry_type=UntrustedText(values["type"]),
        message=UntrustedText(values["message"]),
    )


def now_iso(timezone: str) -> str:
    # e.g. 2026-10-19T18:30:00+09:00
    return datetime.now(ZoneInfo(timezone)).isoformat(timespec="seconds")


# ============================================================
# Ledger (append-only CSV)
# ============================================================

LEDGER_HEADER = (
    "created_at",
    "name",
    "email",
    "tel",
    "type",
    "message",
    "ip",
    "user_agent",
)


class CsvLedger:
    """
    Append-only CSV file shared by every request (and every worker process).

    Writers are serialized with an exclusive lock on a sidecar ``<name>.lock``
    file. Whether the header is still missing is decided inside the same
    critical section as the append, so exactly one header row precedes the
    first data row even when two first-time writers race.
    """

    def __init__(
        self,
        path: Path,
        header: Sequence[str] = LEDGER_HEADER,
        lock_timeout: float = -1,
    ):
        self.path = path
        self.header = tuple(header)
        self.lock_path = path.with_name(path.name + ".lock")
        self.lock_timeout = lock_timeout

    def _ensure_dir(self) -> None:
        d = self.path.parent
        if d.is_dir():
            return
        try:
            d.mkdir(mode=0o755, parents=True, exist_ok=True)
        except OSError as e:
            # another worker may have won the race
            if d.is_dir():
                return
            logger.error("Could not create data dir %s: %s", d, e)
            raise StorageDirectoryUnavailable() from e

    def append(self, row: Iterable[str]) -> None:
        row = list(row)
        if len(row) != len(self.header):
            raise ValueError(f"row has {len(row)} columns, ledger has {len(self.header)}")

        self._ensure_dir()

        try:
            fp = open(self.path, "a", newline="", encoding="utf-8")
        except OSError as e:
            logger.error("Could not open ledger %s: %s", self.path, e)
            raise FileOpenFailure() from e

        with fp:
            lock = FileLock(str(self.lock_path), timeout=self.lock_timeout)
            try:
                lock.acquire()
            except (Timeout, OSError) as e:
                logger.error("Could not lock ledger %s: %s", self.lock_path, e)
                raise LockAcquisitionFailure() from e

            try:
                writer = csv.writer(fp, lineterminator="\n")
                # size is checked under the lock; an empty file has no header yet
                if os.fstat(fp.fileno()).st_size == 0:
                    writer.writerow(self.header)
                writer.writerow(row)
                fp.flush()
            finally:
                lock.release()


def get_ledger() -> CsvLedger:
    s = get_settings()
    return CsvLedger(s.ledger_path, lock_timeout=s.lock_timeout)


# ============================================================
# Request helpers
# ============================================================

def _is_trusted_proxy(request: Request) -> bool:
    """Return True if request.client.host is a trusted reverse proxy."""
    client_host = (request.client.host if request.client else "") or ""
    if not client_host:
        return False

    try:
        ip = ipaddress.ip_address(client_host)
    except ValueError:
        return False

    return any(ip in net for net in get_settings().trusted_proxy_cidrs)


def _xff_leftmost(request: Request) -> str:
    xff = request.headers.get("x-forwarded-for") or ""
    if not xff:
        return ""
    return xff.split(",")[0].strip()


def client_ip(request: Request) -> str:
    # Trust X-Forwarded-For ONLY when the immediate client is a trusted proxy.
    if _is_trusted_proxy(request):
        forwarded = _xff_leftmost(request)
        if forwarded:
            return forwarded
    return (request.client.host if request.client else "") or ""


async def read_form_fields(request: Request) -> dict[str, str]:
    """Text fields of a urlencoded/multipart body. Last value wins; uploads are ignored."""
    form = await request.form()
    return {k: v for k, v in form.multi_items() if isinstance(v, str)}


# ============================================================
# CSP / security headers
# ============================================================

def _build_csp_policy() -> str:
    """
    The confirmation page pulls Bootstrap from jsDelivr and both pages use
    inline style attributes, hence the style-src exceptions.
    """
    directives = [
        "default-src 'self'",
        "base-uri 'self'",
        "object-src 'none'",
        "frame-ancestors 'none'",
        "img-src 'self' data:",
        "style-src 'self' https://cdn.jsdelivr.net 'unsafe-inline'",
        "script-src 'self'",
        "form-action 'self'",
    ]
    return "; ".join(directives)


def init_app_state(app: FastAPI, settings: Settings) -> None:
    app.state.csp_mode = settings.csp_mode
    app.state.csp_policy = _build_csp_policy() if settings.csp_mode != "off" else None
    app.state.spam_filters = DEFAULT_SPAM_FILTERS


def _apply_security_headers_to_response(response: Response, request: Request) -> Response:
    """
    Shared by the middleware and the exception handlers, so error paths carry
    the same headers as normal responses.
    """
    csp_mode = request.app.state.csp_mode
    csp_policy = request.app.state.csp_policy

    if csp_mode == "report":
        response.headers["Content-Security-Policy-Report-Only"] = csp_policy
        if "Content-Security-Policy" in response.headers:
            del response.headers["Content-Security-Policy"]
    elif csp_mode == "enforce":
        response.headers["Content-Security-Policy"] = csp_policy
        if "Content-Security-Policy-Report-Only" in response.headers:
            del response.headers["Content-Security-Policy-Report-Only"]

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["X-Frame-Options"] = "DENY"

    # submissions echo personal data: never cache
    if request.url.path == CONTACT_PATH:
        response.headers["Cache-Control"] = "no-store"

    return response


# ============================================================
# FastAPI App
# ============================================================

CONTACT_PATH = "/contact"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load settings (fail fast on bad env) and pre-build per-app state."""
    init_settings()
    settings = get_settings()
    init_app_state(app, settings)
    logger.info("Ledger: %s (csp=%s)", settings.ledger_path, settings.csp_mode)
    yield


app = FastAPI(lifespan=lifespan)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    return _apply_security_headers_to_response(response, request)


def _error_response(request: Request, message: str, status_code: int) -> HTMLResponse:
    back_url = get_settings().back_url
    response = HTMLResponse(
        status_code=status_code,
        content=render_error(esc(message), esc(back_url)),
    )
    return _apply_security_headers_to_response(response, request)


@app.exception_handler(IntakeError)
async def intake_error_handler(request: Request, exc: IntakeError):
    if isinstance(exc, BotSuspected):
        logger.warning("Submission rejected: %s (ip=%s)", type(exc).__name__, client_ip(request))
    else:
        logger.info("Submission rejected: %s", type(exc).__name__)
    return _error_response(request, exc.message, exc.status_code)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Unreadable bodies and unknown paths render the same error page."""
    # /contact only routes POST; every other method (TRACE, PROPFIND, ...) lands here as 405
    if exc.status_code == 405 and request.url.path == CONTACT_PATH:
        return await intake_error_handler(request, MethodNotAllowed())
    message = "ページが見つかりません。" if exc.status_code == 404 else GENERIC_FAILURE
    return _error_response(request, message, exc.status_code)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    response = HTMLResponse(status_code=500, content=render_server_error())
    return _apply_security_headers_to_response(response, request)


# ============================================================
# Contact Endpoint
# ============================================================

@app.post(CONTACT_PATH, response_class=HTMLResponse)
async def contact(request: Request):
    s = get_settings()

    fields = await read_form_fields(request)
    submission = parse_submission(fields, request.app.state.spam_filters)

    ip = client_ip(request)
    row = submission.as_row(
        created_at=now_iso(s.timezone),
        ip=ip,
        user_agent=request.headers.get("user-agent") or "",
    )

    ledger = get_ledger()
    # blocking file I/O + lock wait: keep it off the event loop
    await run_in_threadpool(ledger.append, row)
    logger.info("Inquiry saved to %s (ip=%s)", ledger.path, ip)

    return HTMLResponse(
        render_thanks(
            name=esc(submission.name),
            email=esc(submission.email),
            inquiry_type=esc(submission.inquiry_type),
            site_name=esc(s.site_name),
            back_url=esc(s.back_url),
        )
    )

