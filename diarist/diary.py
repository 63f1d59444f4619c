#!/usr/bin/env python3
"""
A single-file personal diary: short decorated entries, one optional photo.
"""

import math
import os
import re
import secrets
import threading
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timezone
from functools import lru_cache
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from zoneinfo import ZoneInfo, available_timezones

import boto3
import click
import markdown
from botocore.exceptions import BotoCoreError, ClientError
from flask import (
    Flask,
    abort,
    flash,
    redirect,
    render_template_string,
    request,
    send_from_directory,
    url_for,
)
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.utils import secure_filename

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
ENV_FILE = ROOT / ".env"

MAX_LENGTH_DEFAULT = int(os.environ.get("DIARIST_MAX_LENGTH", "140"))
PAGE_DEFAULT = int(os.environ.get("DIARIST_PAGE_DEFAULT", "10"))
PAGE_MAX = int(os.environ.get("DIARIST_PAGE_MAX", "100"))
TZ_DFLT = "UTC"
UPLOAD_DIR_DEFAULT = Path(os.environ.get("DIARIST_UPLOAD_DIR", str(ROOT / "uploads")))
SEED_ON_START = os.environ.get("DIARIST_SEED", "1") != "0"

R2_ENV_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
    "R2_PUBLIC_BASE",
    "R2_ENDPOINT",
)
R2_REQUIRED_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
)
UPLOAD_MAX_BYTES = 5 * 1024 * 1024  # 5 MiB per image
REQUEST_MAX_BYTES = 10 * 1024 * 1024
IMAGE_MIMES = {
    "image/jpeg",
    "image/png",
    "image/gif",
}
LOCAL_UPLOAD_PREFIX = "/uploads/"

# Emoticons, symbols & pictographs, transport, regional indicators,
# misc symbols, dingbats.  One match per codepoint.
EMOJI_RE = re.compile(
    "[\U0001F600-\U0001F64F"
    "\U0001F300-\U0001F5FF"
    "\U0001F680-\U0001F6FF"
    "\U0001F1E0-\U0001F1FF"
    "\u2600-\u26FF"
    "\u2700-\u27BF]"
)
KAOMOJI_MARKERS = frozenset("٩۶⌐■◕‿＼／＾┌∩┐")
MARKUP_TAG_RE = re.compile(r"<[^>]*>")

SHORTCODES = {
    # feelings
    ":smile:": "😊",
    ":happy:": "😀",
    ":sad:": "😢",
    ":angry:": "😠",
    ":surprised:": "😲",
    ":laugh:": "😂",
    ":cry:": "😭",
    ":love:": "😍",
    ":wink:": "😉",
    ":cool:": "😎",
    # weather
    ":sun:": "☀️",
    ":sunny:": "☀️",
    ":cloudy:": "☁️",
    ":rain:": "☔",
    ":rainy:": "☔",
    ":snow:": "❄️",
    ":snowy:": "❄️",
    ":thunder:": "⚡",
    # misc
    ":heart:": "❤️",
    ":star:": "⭐",
    ":fire:": "🔥",
    ":wave:": "👋",
    ":thumbsup:": "👍",
    ":thumbsdown:": "👎",
    ":party:": "🎉",
    ":gift:": "🎁",
    # activities
    ":work:": "💼",
    ":study:": "📚",
    ":sports:": "⚽",
    ":music:": "🎵",
    ":camera:": "📸",
    ":phone:": "📱",
    ":computer:": "💻",
    ":book:": "📖",
    # food
    ":coffee:": "☕",
    ":cake:": "🍰",
    ":pizza:": "🍕",
    ":apple:": "🍎",
    ":burger:": "🍔",
    ":sushi:": "🍣",
    ":beer:": "🍺",
    ":wine:": "🍷",
    # vehicles
    ":car:": "🚗",
    ":train:": "🚄",
    ":plane:": "✈️",
    ":bike:": "🚲",
    ":bus:": "🚌",
    ":ship:": "🚢",
    # nature
    ":flower:": "🌸",
    ":tree:": "🌳",
    ":mountain:": "🏔️",
    ":ocean:": "🌊",
    ":moon:": "🌙",
    ":rainbow:": "🌈",
}

COLOR_CHOICES = ("red", "orange", "gold", "green", "blue", "purple", "gray")
SIZE_CHOICES = ("small", "medium", "large", "x-large")

MD_EXTENSIONS = ["pymdownx.tilde", "pymdownx.betterem"]

SAMPLE_DIARIES = (
    ("今日は天気が良くて散歩日和でした！桜がとても綺麗だった。", "2025-09-28T10:30:00"),
    ("カフェで読書。コーヒーがとても美味しかった。", "2025-09-27T15:45:00"),
    ("友達と映画を見た。笑って泣いて楽しい一日だった。", "2025-09-26T20:15:00"),
    ("新しいレシピに挑戦。意外と上手くできて満足！", "2025-09-25T18:00:00"),
    ("朝のジョギング。清々しい気持ちで一日をスタート。", "2025-09-24T07:30:00"),
)

try:
    __version__ = version("diarist")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=os.environ.get("DIARIST_SECRET_KEY") or secrets.token_hex(32),
    MAX_CONTENT_LENGTH=REQUEST_MAX_BYTES,
    DIARIST_MAX_LENGTH=MAX_LENGTH_DEFAULT,
    DIARIST_PAGE_DEFAULT=PAGE_DEFAULT,
    DIARIST_PAGE_MAX=PAGE_MAX,
    DIARIST_TIMEZONE=os.environ.get("DIARIST_TIMEZONE", TZ_DFLT),
    DIARIST_SEED=SEED_ON_START,
    UPLOAD_DIR=str(UPLOAD_DIR_DEFAULT),
)
app.json.ensure_ascii = False
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


@lru_cache(maxsize=1)
def _known_timezones() -> frozenset[str]:
    return frozenset(available_timezones())


def tz_name() -> str:
    tz = app.config.get("DIARIST_TIMEZONE") or TZ_DFLT
    return tz if tz in _known_timezones() else TZ_DFLT


def app_tz() -> ZoneInfo:
    return ZoneInfo(tz_name())


def text_limit() -> int:
    try:
        return int(app.config.get("DIARIST_MAX_LENGTH", MAX_LENGTH_DEFAULT))
    except (TypeError, ValueError):
        return MAX_LENGTH_DEFAULT


@app.template_filter("ts")
def ts_filter(dt: datetime | str | None) -> str:
    if not dt:
        return ""
    if isinstance(dt, str):
        try:
            dt = datetime.fromisoformat(dt)
        except ValueError:
            return dt
    return dt.astimezone(app_tz()).strftime("%Y.%m.%d %H:%M")


@app.template_filter("ago")
def ago_filter(dt: datetime | None) -> str:
    """“just now”, “5 minutes ago” … falling back to the absolute stamp after a week."""
    if not dt:
        return ""
    secs = (utc_now() - dt).total_seconds()
    minutes = int(secs // 60)
    hours = minutes // 60
    days = hours // 24
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    if days < 7:
        return f"{days} day{'s' if days != 1 else ''} ago"
    return ts_filter(dt)


@app.template_filter("richtext")
def richtext_filter(text: str | None) -> Markup:
    return Markup(render_markdown_lite(text))


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds")


###############################################################################
# Text model
###############################################################################
def validate_text(text, max_length: int = 140) -> bool:
    """
    A diary text is valid when it is a string whose *trimmed* form has
    1‥max_length characters.  Markup counts: ``<b>…</b>`` is seven
    characters of budget like any other.
    """
    if not text or not isinstance(text, str):
        return False
    trimmed = text.strip()
    return 0 < len(trimmed) <= max_length


def actual_length(text) -> int:
    """Length after dropping every ``<…>`` span (naive, not an HTML parser)."""
    if not isinstance(text, str):
        return 0
    return len(MARKUP_TAG_RE.sub("", text))


def validate_decorated_text(text, max_length: int = 140) -> bool:
    """
    Like `validate_text` but measures the visible length only.
    Not used for enforcement; raw length is still the rule.
    """
    if not text or not isinstance(text, str):
        return False
    trimmed = text.strip()
    if not trimmed:
        return False
    return actual_length(trimmed) <= max_length


def _flag(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "on", "yes"}
    return bool(value)


def _token(value) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip() or None


@dataclass(frozen=True)
class Decoration:
    bold: bool = False
    italic: bool = False
    underline: bool = False
    strikethrough: bool = False
    color: str | None = None
    font_size: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping | None) -> "Decoration":
        """Build from form/JSON input; accepts both ``fontSize`` and ``font_size``."""
        if not data:
            return cls()
        return cls(
            bold=_flag(data.get("bold")),
            italic=_flag(data.get("italic")),
            underline=_flag(data.get("underline")),
            strikethrough=_flag(data.get("strikethrough")),
            color=_token(data.get("color")),
            font_size=_token(data.get("fontSize", data.get("font_size"))),
        )


def decoration_layers(deco: Decoration) -> list[tuple[str, str]]:
    """
    The (open, close) tag pairs *deco* adds, innermost first.

    Order is fixed: color/size span → s → u → i → b.  Stored entries
    were written in this order, so it must never change.
    """
    layers: list[tuple[str, str]] = []
    styles = []
    if deco.color:
        styles.append(f"color: {deco.color}")
    if deco.font_size:
        styles.append(f"font-size: {deco.font_size}")
    if styles:
        layers.append((f'<span style="{"; ".join(styles)};">', "</span>"))
    if deco.strikethrough:
        layers.append(("<s>", "</s>"))
    if deco.underline:
        layers.append(("<u>", "</u>"))
    if deco.italic:
        layers.append(("<i>", "</i>"))
    if deco.bold:
        layers.append(("<b>", "</b>"))
    return layers


def apply_decoration(text, deco: Decoration | Mapping | None = None):
    if not isinstance(text, str) or not deco:
        return text
    if not isinstance(deco, Decoration):
        deco = Decoration.from_mapping(deco)
    for open_tag, close_tag in decoration_layers(deco):
        text = f"{open_tag}{text}{close_tag}"
    return text


def count_emoji(text) -> int:
    if not isinstance(text, str):
        return 0
    return len(EMOJI_RE.findall(text))


def contains_ascii_art(text) -> bool:
    """Coarse kaomoji check: any marker glyph anywhere counts."""
    if not isinstance(text, str):
        return False
    return any(ch in KAOMOJI_MARKERS for ch in text)


def expand_shortcodes(text):
    """Replace every known ``:name:`` token; unknown ones stay literal."""
    if not isinstance(text, str) or not SHORTCODES:
        return text
    table = SHORTCODES
    return _shortcode_re(frozenset(table)).sub(lambda m: table[m.group(0)], text)


@lru_cache(maxsize=4)
def _shortcode_re(codes: frozenset[str]) -> re.Pattern:
    # one leftmost-first pass; a colon shared by two tokens goes to the left one
    ordered = sorted(codes, key=lambda c: (-len(c), c))
    return re.compile("|".join(map(re.escape, ordered)))


def text_stats(text) -> dict:
    if not isinstance(text, str):
        text = ""
    return {
        "totalLength": len(text),
        "actualLength": actual_length(text),
        "emojiCount": count_emoji(text),
        "hasAsciiArt": contains_ascii_art(text),
        "hasDecorations": bool(MARKUP_TAG_RE.search(text)),
    }


def render_markdown_lite(text: str | None) -> str:
    """
    Render ``**bold**``, ``*italic*`` and ``~~strike~~`` for display.
    Inline HTML is passed through untouched; a lone <p> wrapper is dropped.
    """
    if not text:
        return ""
    html = markdown.markdown(text, extensions=MD_EXTENSIONS)
    if html.startswith("<p>") and html.endswith("</p>") and html.count("<p>") == 1:
        html = html[3:-4].strip()
    return html


###############################################################################
# Diary store + query
###############################################################################
@dataclass(frozen=True)
class DiaryEntry:
    id: str
    text: str
    created_at: datetime
    updated_at: datetime
    image_url: str | None = None

    def to_dict(self) -> dict:
        out = {
            "id": self.id,
            "text": self.text,
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }
        if self.image_url:
            out["imageUrl"] = self.image_url
        return out


@dataclass(frozen=True)
class Pagination:
    page: int
    limit: int
    total: int
    total_pages: int

    def to_dict(self) -> dict:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "totalPages": self.total_pages,
        }


@dataclass(frozen=True)
class QueryResult:
    items: list[DiaryEntry]
    pagination: Pagination


def parse_day(value, tz: ZoneInfo | timezone | None = None) -> date | None:
    """
    Accept a `date`, a `datetime` or an ISO string (``2025-09-28`` or a full
    timestamp) and return the calendar day.  Raises ValueError on garbage.

    A timestamp carrying an offset is first moved into *tz* (UTC by
    default), so the day is the one the query boundaries will use.
    """
    if value is None or value == "":
        return None
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if not isinstance(value, datetime):
        value = datetime.fromisoformat(str(value).strip())
    if value.tzinfo is not None:
        value = value.astimezone(tz or timezone.utc)
    return value.date()


class DiaryStore:
    """
    The in-memory diary collection.

    Entries live in an insertion-ordered dict; every public method holds
    the one lock for its whole duration.  Returned entries are frozen.
    """

    def __init__(self):
        self._entries: dict[str, DiaryEntry] = {}
        self._issued: set[str] = set()
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, entry_id) -> bool:
        with self._lock:
            return entry_id in self._entries

    def _new_id(self) -> str:
        while True:
            entry_id = uuid.uuid4().hex
            if entry_id not in self._issued:
                self._issued.add(entry_id)
                return entry_id

    def insert(
        self,
        text: str,
        image_url: str | None = None,
        *,
        created_at: datetime | None = None,
    ) -> DiaryEntry:
        now = created_at or utc_now()
        with self._lock:
            entry = DiaryEntry(
                id=self._new_id(),
                text=text,
                image_url=image_url or None,
                created_at=now,
                updated_at=now,
            )
            self._entries[entry.id] = entry
        return entry

    def get(self, entry_id: str) -> DiaryEntry | None:
        with self._lock:
            return self._entries.get(entry_id)

    def update(self, entry_id: str, text: str) -> DiaryEntry | None:
        """Swap the text; id, created_at and image_url stay as they were."""
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return None
            updated = replace(
                entry, text=text, updated_at=max(utc_now(), entry.created_at)
            )
            self._entries[entry_id] = updated
        return updated

    def pop(self, entry_id: str) -> DiaryEntry | None:
        with self._lock:
            return self._entries.pop(entry_id, None)

    def delete(self, entry_id: str) -> bool:
        return self.pop(entry_id) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def query(
        self,
        *,
        page: int = 1,
        limit: int = PAGE_DEFAULT,
        search: str | None = None,
        start_date=None,
        end_date=None,
        tz: ZoneInfo | timezone | None = None,
    ) -> QueryResult:
        """
        Filter → sort newest first → paginate.

        • *search*      case-insensitive substring of the text
        • *start_date*  from 00:00 of that day (inclusive)
        • *end_date*    through 23:59:59.999 of that day (inclusive)

        Day boundaries are taken in *tz* (UTC by default).  Ties on
        created_at keep insertion order.  Pages past the end are empty.
        """
        page, limit = int(page), int(limit)
        if page < 1:
            raise ValueError("page must be >= 1")
        if limit < 1:
            raise ValueError("limit must be >= 1")
        tz = tz or timezone.utc
        start_day, end_day = parse_day(start_date, tz), parse_day(end_date, tz)

        with self._lock:
            rows = list(self._entries.values())

        if isinstance(search, str) and search:
            needle = search.casefold()
            rows = [e for e in rows if needle in e.text.casefold()]
        if start_day is not None:
            lo = datetime.combine(start_day, time.min, tzinfo=tz)
            rows = [e for e in rows if e.created_at >= lo]
        if end_day is not None:
            hi = datetime.combine(end_day, time(23, 59, 59, 999000), tzinfo=tz)
            rows = [e for e in rows if e.created_at <= hi]

        rows.sort(key=lambda e: e.created_at, reverse=True)

        total = len(rows)
        total_pages = math.ceil(total / limit) if total else 0
        offset = (page - 1) * limit
        return QueryResult(
            items=rows[offset : offset + limit],
            pagination=Pagination(page, limit, total, total_pages),
        )

    def seed(self, *, tz: ZoneInfo | timezone | None = None) -> int:
        """Add the fixed sample entries (wall-clock times read in *tz*)."""
        tz = tz or timezone.utc
        for text, stamp in SAMPLE_DIARIES:
            created = datetime.fromisoformat(stamp).replace(tzinfo=tz)
            self.insert(text, created_at=created.astimezone(timezone.utc))
        return len(SAMPLE_DIARIES)


def init_store(*, seed: bool | None = None) -> DiaryStore:
    """Install a fresh store on the app, optionally with the sample entries."""
    store = DiaryStore()
    if seed is None:
        seed = app.config.get("DIARIST_SEED", True)
    if seed:
        n = store.seed(tz=app_tz())
        app.logger.info("Seeded %d sample diary entries", n)
    app.extensions["diarist.store"] = store
    return store


def get_store() -> DiaryStore:
    store = app.extensions.get("diarist.store")
    if store is None:
        store = init_store()
    return store


###############################################################################
# Images (local directory or R2)
###############################################################################
class BlobStoreError(RuntimeError):
    """Writing an image to the blob store failed."""


def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


def r2_config() -> dict[str, str]:
    env_file = _read_env_file()
    cfg = {k: (os.environ.get(k) or env_file.get(k) or "").strip() for k in R2_ENV_KEYS}
    return {k: v for k, v in cfg.items() if v}


def r2_is_configured(cfg: dict[str, str] | None = None) -> bool:
    cfg = cfg if cfg is not None else r2_config()
    return all(cfg.get(k) for k in R2_REQUIRED_KEYS)


def _r2_client(cfg: dict[str, str]):
    endpoint = (
        cfg.get("R2_ENDPOINT")
        or f"https://{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com"
    )
    return boto3.client(
        "s3",
        endpoint_url=endpoint,
        region_name="auto",
        aws_access_key_id=cfg["R2_ACCESS_KEY_ID"],
        aws_secret_access_key=cfg["R2_SECRET_ACCESS_KEY"],
    )


def r2_object_url(cfg: dict[str, str], key: str) -> str:
    base = cfg.get("R2_PUBLIC_BASE")
    if base:
        return f"{base.rstrip('/')}/{key.lstrip('/')}"
    return f"https://{cfg['R2_BUCKET']}.{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com/{key.lstrip('/')}"


def upload_dir() -> Path:
    return Path(app.config["UPLOAD_DIR"])


def validate_image(mimetype: str | None, size: int | None) -> str | None:
    """Return an error message for a bad image, or None when it is fine."""
    if (mimetype or "").lower() not in IMAGE_MIMES:
        return "Only JPEG, PNG and GIF images can be uploaded."
    if size is None or size > UPLOAD_MAX_BYTES:
        return "Images must be 5 MB or smaller."
    return None


def _stream_size(f) -> int:
    f.stream.seek(0, os.SEEK_END)
    size = f.stream.tell()
    f.stream.seek(0)
    return size


def save_image(f) -> str:
    """
    Persist an uploaded `FileStorage` and return its public URL.
    Raises ValidationError for bad files, BlobStoreError when storage fails.
    """
    mime = (f.mimetype or "").lower()
    err = validate_image(mime, _stream_size(f))
    if err:
        app.logger.warning("Rejected upload %r (%s)", f.filename, mime)
        raise ValidationError(err, field="image")

    ext = Path(secure_filename(f.filename or "")).suffix.lower()
    name = f"{uuid.uuid4().hex}{ext}"

    cfg = r2_config()
    if r2_is_configured(cfg):
        key = f"uploads/{utc_now().strftime('%Y/%m/%d')}/{name}"
        try:
            _r2_client(cfg).upload_fileobj(
                f.stream, cfg["R2_BUCKET"], key, ExtraArgs={"ContentType": mime}
            )
        except (BotoCoreError, ClientError) as exc:
            app.logger.exception("R2 upload failed")
            raise BlobStoreError("Upload failed – check R2 credentials.") from exc
        url = r2_object_url(cfg, key)
    else:
        folder = upload_dir()
        try:
            folder.mkdir(parents=True, exist_ok=True)
            f.save(folder / name)
        except OSError as exc:
            app.logger.exception("Could not write %s", folder / name)
            raise BlobStoreError("Upload failed – could not store the image.") from exc
        url = f"{LOCAL_UPLOAD_PREFIX}{name}"

    app.logger.info("Stored image %s", url)
    return url


def delete_image(url: str | None) -> bool:
    """Best-effort removal; failures are logged, never raised."""
    if not url:
        return False
    if url.startswith(LOCAL_UPLOAD_PREFIX):
        path = upload_dir() / Path(url).name
        try:
            path.unlink(missing_ok=True)
        except OSError:
            app.logger.exception("Could not delete %s", path)
            return False
        app.logger.info("Deleted image %s", url)
        return True

    cfg = r2_config()
    prefix = r2_object_url(cfg, "") if r2_is_configured(cfg) else None
    if not prefix or not url.startswith(prefix):
        app.logger.warning("No blob store owns %s – left in place", url)
        return False
    try:
        _r2_client(cfg).delete_object(Bucket=cfg["R2_BUCKET"], Key=url[len(prefix) :])
    except (BotoCoreError, ClientError):
        app.logger.exception("R2 delete failed for %s", url)
        return False
    app.logger.info("Deleted image %s", url)
    return True


@app.route("/uploads/<path:name>")
def uploaded_file(name):
    return send_from_directory(upload_dir(), name)


###############################################################################
# Boundary helpers
###############################################################################
class ValidationError(ValueError):
    """Rejected input; *field* names the offending form/query field."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.message = message
        self.field = field


def require_text(raw) -> str:
    """Validate diary text and return it trimmed, or raise ValidationError."""
    if not raw or not isinstance(raw, str):
        raise ValidationError("Text is required.", field="text")
    if not raw.strip():
        raise ValidationError("Please enter some text.", field="text")
    limit = text_limit()
    if not validate_text(raw, limit):
        raise ValidationError(
            f"Text must be {limit} characters or fewer.", field="text"
        )
    return raw.strip()


def _int_arg(name: str, default: int, *, lo: int, hi: int | None = None) -> int:
    raw = request.args.get(name, "")
    if raw == "":
        return default
    try:
        val = int(raw)
    except ValueError:
        val = None
    if val is None or val < lo or (hi is not None and val > hi):
        msg = (
            f"{name} must be a number between {lo} and {hi}."
            if hi is not None
            else f"{name} must be a number >= {lo}."
        )
        raise ValidationError(msg, field=name)
    return val


def query_args() -> dict:
    """Read and check the list parameters shared by the API and the index page."""
    args = {
        "page": _int_arg("page", 1, lo=1),
        "limit": _int_arg(
            "limit",
            app.config["DIARIST_PAGE_DEFAULT"],
            lo=1,
            hi=app.config["DIARIST_PAGE_MAX"],
        ),
        "search": request.args.get("search", "").strip() or None,
    }
    for name, key in (("startDate", "start_date"), ("endDate", "end_date")):
        raw = request.args.get(name, "").strip()
        try:
            args[key] = parse_day(raw, app_tz())
        except ValueError:
            raise ValidationError(
                f"{name} must be a date like 2025-09-28.", field=name
            ) from None
    return args


def run_query(args: dict) -> QueryResult:
    return get_store().query(tz=app_tz(), **args)


def create_entry(raw_text, image=None) -> DiaryEntry:
    """Validate, store the image (if any), insert.  Rolls the image back on failure."""
    text = require_text(raw_text)
    image_url = save_image(image) if image and image.filename else None
    try:
        return get_store().insert(text, image_url)
    except Exception:
        delete_image(image_url)
        raise


def update_entry(entry_id: str, raw_text) -> DiaryEntry:
    get_entry_or_404(entry_id)
    entry = get_store().update(entry_id, require_text(raw_text))
    if entry is None:  # deleted in between
        abort(404)
    return entry


def remove_entry(entry_id: str) -> DiaryEntry:
    entry = get_store().pop(entry_id)
    if entry is None:
        abort(404)
    delete_image(entry.image_url)
    return entry


def get_entry_or_404(entry_id: str) -> DiaryEntry:
    entry = get_store().get(entry_id)
    if entry is None:
        abort(404)
    return entry


def _wants_json() -> bool:
    return request.path.startswith("/api/")


def _error(message: str, status: int, field: str | None = None):
    body = {"success": False, "error": message}
    if field:
        body["field"] = field
    return body, status


###############################################################################
# CLI
###############################################################################
@app.cli.command("seed")
@click.option("--clear", is_flag=True, help="Drop existing entries first.")
def cli_seed(clear: bool):
    """Add the sample entries to the running store."""
    store = get_store()
    if clear:
        store.clear()
    n = store.seed(tz=app_tz())
    click.secho(f"\n🌱  Added {n} sample entries ({len(store)} total).", fg="green")


@app.cli.command("stats")
def cli_stats():
    """Print a short summary of the collection."""
    store = get_store()
    res = store.query(limit=max(len(store), 1))
    emoji = sum(count_emoji(e.text) for e in res.items)
    art = sum(contains_ascii_art(e.text) for e in res.items)
    photos = sum(bool(e.image_url) for e in res.items)
    click.echo(f"entries:   {len(store)}")
    click.echo(f"with photo:{photos:>4}")
    click.echo(f"emoji:     {emoji}")
    click.echo(f"kaomoji:   {art}")


###############################################################################
# JSON API
###############################################################################
@app.route("/health")
def health():
    return {"status": "OK", "timestamp": iso(utc_now())}


@app.route("/api/diaries", methods=["GET"])
def api_list_diaries():
    res = run_query(query_args())
    return {
        "success": True,
        "data": [e.to_dict() for e in res.items],
        "pagination": res.pagination.to_dict(),
    }


@app.route("/api/diaries/<entry_id>", methods=["GET"])
def api_get_diary(entry_id):
    return {"success": True, "data": get_entry_or_404(entry_id).to_dict()}


@app.route("/api/diaries", methods=["POST"])
def api_create_diary():
    entry = create_entry(request.form.get("text"), request.files.get("image"))
    app.logger.info("Created diary %s", entry.id)
    return {
        "success": True,
        "data": entry.to_dict(),
        "message": "Diary entry created.",
    }, 201


@app.route("/api/diaries/<entry_id>", methods=["PUT"])
def api_update_diary(entry_id):
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = request.form
    entry = update_entry(entry_id, payload.get("text"))
    app.logger.info("Updated diary %s", entry.id)
    return {
        "success": True,
        "data": entry.to_dict(),
        "message": "Diary entry updated.",
    }


@app.route("/api/diaries/<entry_id>", methods=["DELETE"])
def api_delete_diary(entry_id):
    entry = remove_entry(entry_id)
    app.logger.info("Deleted diary %s", entry.id)
    return {"success": True, "message": "Diary entry deleted."}


@app.route("/api/diaries/<entry_id>/stats", methods=["GET"])
def api_diary_stats(entry_id):
    return {"success": True, "data": text_stats(get_entry_or_404(entry_id).text)}


###############################################################################
# Templates + Views
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title or 'diarist' }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<style>
html{font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Noto Sans JP",sans-serif}
body{max-width:36em;margin:auto;padding:13px;line-height:1.6;color:#c9c9c9;background:#222}
a{color:#fff;text-decoration-color:transparent}a:hover{text-decoration-color:#c9c9c9}
textarea,input,select{color:#c9c9c9;background:#2b2b2b;border:1px solid #555;border-radius:6px;padding:6px 10px;margin-bottom:10px;box-sizing:border-box}
textarea{width:100%;min-height:6rem}
button{padding:5px 12px;background:#fff;color:#222;border:1px solid #fff;border-radius:2px;cursor:pointer}
article{margin:2rem 0;padding-bottom:1rem;border-bottom:1px solid #333}
article img{max-width:100%;height:auto;border-radius:4px}
.meta{color:#888;font-size:.8em}
.flash{color:#f9c0c0;background:#331414;border:1px solid #b33;padding:.5rem 1rem;border-radius:4px}
.toolbar{display:flex;flex-wrap:wrap;gap:.75rem;align-items:center;font-size:.85em}
.toolbar label{display:inline-flex;gap:.25rem;align-items:center}
.pill{display:inline-block;padding:.1em .6em;margin-right:.4em;background:#444;color:#fff;border-radius:1em;font-size:.75em}
</style>
<body>
<nav style="display:flex;justify-content:space-between;margin-bottom:1rem;">
  <a href="{{ url_for('index') }}"><strong>diarist</strong></a>
  <a href="{{ url_for('create_page') }}">New entry</a>
</nav>
{% with msgs = get_flashed_messages() %}
  {% for m in msgs %}<p class="flash">{{ m }}</p>{% endfor %}
{% endwith %}
<main id="main-content">
"""

TEMPL_EPILOG = """
</main>
<footer style="margin-top:3rem;font-size:.7em;color:#666;">diarist {{ version }}</footer>
</body>
</html>
"""

app.jinja_env.globals.update(
    version=__version__,
    color_choices=COLOR_CHOICES,
    size_choices=SIZE_CHOICES,
    shortcodes=SHORTCODES,
    text_limit=text_limit,
    text_stats=text_stats,
)


TEMPL_INDEX = wrap("""
{% block body %}
<form method="get" action="{{ url_for('index') }}" style="margin-bottom:1rem;">
    <input type="search" name="search" placeholder="Search" value="{{ args.search or '' }}">
    <input type="date" name="startDate" value="{{ args.start_date or '' }}">
    <input type="date" name="endDate" value="{{ args.end_date or '' }}">
    <button>Filter</button>
</form>
{% for e in res.items %}
    <article>
        <div class="e-content">{{ e.text|richtext }}</div>
        {% if e.image_url %}<img src="{{ e.image_url }}" alt="" loading="lazy">{% endif %}
        <div class="meta">
            <a href="{{ url_for('diary_detail', entry_id=e.id) }}">
                <time datetime="{{ e.created_at.isoformat() }}">{{ e.created_at|ago }}</time>
            </a>&nbsp;
            <a href="{{ url_for('edit_page', entry_id=e.id) }}">Edit</a>&nbsp;
            <a href="{{ url_for('delete_page', entry_id=e.id) }}">Delete</a>
        </div>
    </article>
{% else %}
    <p>No entries yet.</p>
{% endfor %}
{% if res.pagination.total_pages > 1 %}
<nav style="margin-top:2em;font-size:.75em;">
    {% for p in range(1, res.pagination.total_pages + 1) %}
        {% if p == res.pagination.page %}
            <span style="border-bottom:0.33rem solid #aaa;">{{ p }}</span>
        {% else %}
            <a href="{{ url_for('index', page=p, **filters) }}">{{ p }}</a>
        {% endif %}
        {% if not loop.last %}&nbsp;{% endif %}
    {% endfor %}
</nav>
{% endif %}
{% endblock %}
""")

TEMPL_FORM = wrap("""
{% block body %}
<h2>{{ heading }}</h2>
<form method="post" enctype="multipart/form-data">
    <textarea name="text" maxlength="{{ text_limit() }}" required
              placeholder="What happened today?">{{ text }}</textarea>
    <div class="meta">{{ text|length }} / {{ text_limit() }} characters (markup counts)</div>
    <div class="toolbar">
        <label><input type="checkbox" name="bold"> <b>B</b></label>
        <label><input type="checkbox" name="italic"> <i>I</i></label>
        <label><input type="checkbox" name="underline"> <u>U</u></label>
        <label><input type="checkbox" name="strikethrough"> <s>S</s></label>
        <select name="color">
            <option value="">Color</option>
            {% for c in color_choices %}<option value="{{ c }}">{{ c }}</option>{% endfor %}
        </select>
        <select name="fontSize">
            <option value="">Size</option>
            {% for s in size_choices %}<option value="{{ s }}">{{ s }}</option>{% endfor %}
        </select>
    </div>
    {% if with_image %}
    <label>Photo (JPEG, PNG, GIF – 5 MB max)
        <input type="file" name="image" accept="image/jpeg,image/png,image/gif">
    </label>
    {% endif %}
    <details class="meta"><summary>Shortcodes</summary>
        {% for code, emoji in shortcodes.items() %}<code>{{ code }}</code> {{ emoji }}&nbsp; {% endfor %}
    </details>
    <p><button>Save</button> <a href="{{ cancel_url }}" style="margin-left:1rem;">Cancel</a></p>
</form>
{% endblock %}
""")

TEMPL_DETAIL = wrap("""
{% block body %}
<article>
    <div class="e-content" style="font-size:1.2em;">{{ e.text|richtext }}</div>
    {% if e.image_url %}<img src="{{ e.image_url }}" alt="">{% endif %}
    <div class="meta">
        Written {{ e.created_at|ts }}
        {% if e.updated_at != e.created_at %} · edited {{ e.updated_at|ts }}{% endif %}
    </div>
    {% set st = text_stats(e.text) %}
    <p class="meta">
        <span class="pill">{{ st.actualLength }} chars</span>
        {% if st.emojiCount %}<span class="pill">{{ st.emojiCount }} emoji</span>{% endif %}
        {% if st.hasAsciiArt %}<span class="pill">kaomoji</span>{% endif %}
        {% if st.hasDecorations %}<span class="pill">decorated</span>{% endif %}
    </p>
    <a href="{{ url_for('edit_page', entry_id=e.id) }}">Edit</a>&nbsp;
    <a href="{{ url_for('delete_page', entry_id=e.id) }}">Delete</a>&nbsp;
    <a href="{{ url_for('index') }}">Back</a>
</article>
{% endblock %}
""")

TEMPL_DELETE = wrap("""
{% block body %}
    <h2>Delete entry?</h2>
    <article style="border-left:3px solid #c00; padding-left:1rem;">
        <div class="e-content">{{ e.text|richtext }}</div>
        <small style="color:#aaa;">{{ e.created_at|ts }}</small>
    </article>
    <form method="post">
        <button style="background:#c00; color:#fff;">Yes – delete it</button>
        <a href="{{ url_for('diary_detail', entry_id=e.id) }}" style="margin-left:1rem;">Cancel</a>
    </form>
{% endblock %}
""")


def _decorated_form_text() -> str:
    """Form text with shortcodes expanded and the toolbar applied."""
    raw = request.form.get("text", "")
    if not raw.strip():
        return raw
    deco = Decoration.from_mapping(request.form)
    return apply_decoration(expand_shortcodes(raw.strip()), deco)


@app.route("/")
def index():
    args = query_args()
    res = run_query(args)
    filters = {
        k: v
        for k, v in {
            "search": args["search"],
            "startDate": args["start_date"],
            "endDate": args["end_date"],
        }.items()
        if v
    }
    return render_template_string(TEMPL_INDEX, res=res, args=args, filters=filters)


@app.route("/create", methods=["GET", "POST"])
def create_page():
    text, status = "", 200
    if request.method == "POST":
        text = request.form.get("text", "")
        try:
            entry = create_entry(_decorated_form_text(), request.files.get("image"))
        except ValidationError as exc:
            flash(exc.message)
            status = 400
        except BlobStoreError as exc:
            flash(str(exc))
            status = 502
        else:
            return redirect(url_for("diary_detail", entry_id=entry.id))

    return render_template_string(
        TEMPL_FORM,
        heading="New entry",
        text=text,
        with_image=True,
        cancel_url=url_for("index"),
    ), status


@app.route("/diary/<entry_id>")
def diary_detail(entry_id):
    return render_template_string(
        TEMPL_DETAIL, e=get_entry_or_404(entry_id), title="diarist"
    )


@app.route("/edit/<entry_id>", methods=["GET", "POST"])
def edit_page(entry_id):
    entry = get_entry_or_404(entry_id)
    text, status = entry.text, 200
    if request.method == "POST":
        text = request.form.get("text", "")
        try:
            update_entry(entry_id, _decorated_form_text())
        except ValidationError as exc:
            flash(exc.message)
            status = 400
        else:
            return redirect(url_for("diary_detail", entry_id=entry_id))

    return render_template_string(
        TEMPL_FORM,
        heading="Edit entry",
        text=text,
        with_image=False,
        cancel_url=url_for("diary_detail", entry_id=entry_id),
    ), status


@app.route("/diary/<entry_id>/delete", methods=["GET", "POST"])
def delete_page(entry_id):
    entry = get_entry_or_404(entry_id)
    if request.method == "POST":
        remove_entry(entry_id)
        return redirect(url_for("index"))
    return render_template_string(TEMPL_DELETE, e=entry)


###############################################################################
# Error pages
###############################################################################
@app.errorhandler(ValidationError)
def validation_error(exc: ValidationError):
    if _wants_json():
        return _error(exc.message, 400, exc.field)
    return render_template_string(TEMPL_400, message=exc.message), 400


@app.errorhandler(BlobStoreError)
def blob_store_error(exc: BlobStoreError):
    return _error(str(exc), 502, "image")


@app.errorhandler(413)
def too_large(exc):
    """Body over MAX_CONTENT_LENGTH – report it against the image field."""
    if _wants_json():
        return _error("Images must be 5 MB or smaller.", 400, "image")
    return render_template_string(
        TEMPL_400, message="Images must be 5 MB or smaller."
    ), 400


@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    if _wants_json():
        return _error("The requested diary entry does not exist.", 404)
    return render_template_string(TEMPL_404), 404


@app.errorhandler(500)
def internal_error(exc):
    if _wants_json():
        return _error("Internal server error.", 500)
    return render_template_string(TEMPL_500), 500


TEMPL_400 = wrap("""
{% block body %}
  <h2 style="margin-top:0">Bad request</h2>
  <p>{{ message }}</p>
  <p><a href="{{ url_for('index') }}">Back to the diary</a></p>
{% endblock %}
""")

TEMPL_404 = wrap("""
{% block body %}
  <h2 style="margin-top:0">Page not found</h2>
  <p>The entry you asked for doesn’t exist (anymore).
     <a href="{{ url_for('index') }}">Back to the diary</a>.</p>
{% endblock %}
""")

TEMPL_500 = wrap("""
{% block body %}
  <h2 style="margin-top:0">Internal Server Error</h2>
  <p>Our fault, not yours. Please try again in a minute.</p>
{% endblock %}
""")


init_store()

###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    app.run(debug=True)
