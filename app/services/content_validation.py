"""Structured QR content validation.

Each content kind has one validator registered in ``_VALIDATORS``. A validator
returns ``None`` when the payload is acceptable or a field-level error message
otherwise. The registry is checked against ``ContentKind`` at import time so a
new kind cannot ship without a validator.
"""
import math
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Sequence
from urllib.parse import urlsplit

from pydantic import BaseModel

from app.core.url_guard import is_safe_url


class ContentKind(str, Enum):
    URL = "url"
    TEXT = "text"
    WIFI = "wifi"
    VCARD = "vcard"
    EMAIL = "email"
    PHONE = "phone"
    SMS = "sms"
    WHATSAPP = "whatsapp"
    FACEBOOK = "facebook"
    INSTAGRAM = "instagram"
    LINKEDIN = "linkedin"
    X = "x"
    TIKTOK = "tiktok"
    SNAPCHAT = "snapchat"
    THREADS = "threads"
    YOUTUBE = "youtube"
    PINTEREST = "pinterest"
    SPOTIFY = "spotify"
    REDDIT = "reddit"
    TWITCH = "twitch"
    DISCORD = "discord"
    APPS = "apps"
    GOOGLE_REVIEW = "google-review"
    MULTI_REVIEW = "multi-review"
    FEEDBACK = "feedback"
    EVENT = "event"
    GEO = "geo"
    PDF = "pdf"
    IMAGES = "images"
    VIDEO = "video"
    MP3 = "mp3"
    MENU = "menu"
    BUSINESS = "business"
    LINKS = "links"
    COUPON = "coupon"
    SOCIAL = "social"


class ValidationResult(BaseModel):
    valid: bool
    error: Optional[str] = None


Content = Mapping[str, Any]
Validator = Callable[[Content], Optional[str]]

MAX_TEXT_LENGTH = 2953
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
WIFI_ENCRYPTIONS = ("WPA", "WEP", "nopass")
SPOTIFY_CONTENT_TYPES = ("track", "album", "playlist", "artist", "show", "episode")
REDDIT_CONTENT_TYPES = ("user", "subreddit")
FEEDBACK_RATING_TYPES = ("stars", "emoji", "numeric")
FACEBOOK_HOSTS = ("facebook.com", "fb.com")
YOUTUBE_VIDEO_ID_LENGTH = 11
GOOGLE_PLACE_ID_MIN_LENGTH = 20

_VALIDATORS: Dict[ContentKind, Validator] = {}


def validates(*kinds: ContentKind) -> Callable[[Validator], Validator]:
    def register(func: Validator) -> Validator:
        for kind in kinds:
            if kind in _VALIDATORS:
                raise RuntimeError(f"Duplicate content validator for {kind.value}")
            _VALIDATORS[kind] = func
        return func
    return register


# Field helpers


def _has_text(content: Content, field: str) -> bool:
    value = content.get(field)
    return isinstance(value, str) and bool(value.strip())


def _require_text(content: Content, field: str, kind: str) -> Optional[str]:
    value = content.get(field)
    if value is None or value == "":
        return f"content.{field} is required for {kind} content"
    if not isinstance(value, str):
        return f"content.{field} must be a string"
    if not value.strip():
        return f"content.{field} is required for {kind} content"
    return None


def _check_optional_url(content: Content, field: str) -> Optional[str]:
    value = content.get(field)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        return f"content.{field} must be a string"
    if not is_safe_url(value):
        return f"content.{field} must be a public http:// or https:// URL"
    return None


def _require_any_text(content: Content, fields: Sequence[str], kind: str) -> Optional[str]:
    if any(_has_text(content, field) for field in fields):
        return None
    names = ", ".join(f"content.{field}" for field in fields[:-1])
    return f"{kind} content requires {names} or content.{fields[-1]}"


def _require_list(content: Content, field: str, message: str) -> Optional[str]:
    value = content.get(field)
    if value is None:
        return message
    if not isinstance(value, list):
        return f"content.{field} must be a list"
    if not value:
        return message
    return None


def _require_choice(
    content: Content, field: str, choices: Sequence[str], required: bool = True
) -> Optional[str]:
    value = content.get(field)
    if value is None or value == "":
        if required:
            return f"content.{field} is required and must be one of: {', '.join(choices)}"
        return None
    if value not in choices:
        return f"content.{field} must be one of: {', '.join(choices)}"
    return None


def _parse_datetime(value: str) -> Optional[datetime]:
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return float(value)


def _first_error(*errors: Optional[str]) -> Optional[str]:
    for error in errors:
        if error:
            return error
    return None


# Validators, one per kind


@validates(ContentKind.URL)
def _validate_url(content: Content) -> Optional[str]:
    error = _require_text(content, "url", "url")
    if error:
        return error
    if not is_safe_url(content["url"]):
        return "content.url must be a public http:// or https:// URL"
    return None


@validates(ContentKind.TEXT)
def _validate_text(content: Content) -> Optional[str]:
    error = _require_text(content, "text", "text")
    if error:
        return error
    if len(content["text"]) > MAX_TEXT_LENGTH:
        return f"content.text is too long (max {MAX_TEXT_LENGTH} characters)"
    return None


@validates(ContentKind.WIFI)
def _validate_wifi(content: Content) -> Optional[str]:
    return _first_error(
        _require_text(content, "ssid", "wifi"),
        _require_choice(content, "encryption", WIFI_ENCRYPTIONS, required=False),
    )


@validates(ContentKind.VCARD)
def _validate_vcard(content: Content) -> Optional[str]:
    return _first_error(
        _require_any_text(content, ("firstName", "lastName", "organization"), "vcard"),
        _check_optional_url(content, "url"),
    )


@validates(ContentKind.EMAIL)
def _validate_email(content: Content) -> Optional[str]:
    error = _require_text(content, "email", "email")
    if error:
        return error
    if not EMAIL_PATTERN.match(content["email"].strip()):
        return "content.email is not a valid email address"
    return None


def _single_field(kind: ContentKind, field: str) -> None:
    """Register a validator for a kind whose only rule is one required text field."""
    def _validate(content: Content) -> Optional[str]:
        return _require_text(content, field, kind.value)
    validates(kind)(_validate)


# Phone numbers are free-form; no format is enforced
for _kind in (ContentKind.PHONE, ContentKind.SMS, ContentKind.WHATSAPP):
    _single_field(_kind, "phone")

for _kind in (
    ContentKind.INSTAGRAM,
    ContentKind.LINKEDIN,
    ContentKind.X,
    ContentKind.TIKTOK,
    ContentKind.SNAPCHAT,
    ContentKind.THREADS,
    ContentKind.PINTEREST,
    ContentKind.TWITCH,
):
    _single_field(_kind, "username")

_single_field(ContentKind.DISCORD, "inviteCode")


@validates(ContentKind.FACEBOOK)
def _validate_facebook(content: Content) -> Optional[str]:
    error = _require_text(content, "profileUrl", "facebook")
    if error:
        return error
    profile_url = content["profileUrl"].strip()
    if not profile_url.lower().startswith(("http://", "https://")):
        profile_url = f"https://{profile_url}"
    if not is_safe_url(profile_url):
        return "content.profileUrl must be a public http:// or https:// URL"
    hostname = (urlsplit(profile_url).hostname or "").rstrip(".")
    if not any(hostname == host or hostname.endswith(f".{host}") for host in FACEBOOK_HOSTS):
        return "content.profileUrl must be a facebook.com or fb.com URL"
    return None


@validates(ContentKind.YOUTUBE)
def _validate_youtube(content: Content) -> Optional[str]:
    error = _require_text(content, "videoId", "youtube")
    if error:
        return error
    if len(content["videoId"].strip()) != YOUTUBE_VIDEO_ID_LENGTH:
        return f"content.videoId must be exactly {YOUTUBE_VIDEO_ID_LENGTH} characters"
    return None


@validates(ContentKind.SPOTIFY)
def _validate_spotify(content: Content) -> Optional[str]:
    return _first_error(
        _require_text(content, "spotifyId", "spotify"),
        _require_choice(content, "contentType", SPOTIFY_CONTENT_TYPES),
    )


@validates(ContentKind.REDDIT)
def _validate_reddit(content: Content) -> Optional[str]:
    error = _require_choice(content, "contentType", REDDIT_CONTENT_TYPES)
    if error:
        return error
    if content["contentType"] == "subreddit":
        return _require_text(content, "subreddit", "reddit subreddit")
    return _require_text(content, "username", "reddit user")


@validates(ContentKind.APPS)
def _validate_apps(content: Content) -> Optional[str]:
    fields = ("appStoreUrl", "playStoreUrl", "fallbackUrl")
    return _first_error(
        _require_any_text(content, fields, "apps"),
        *(_check_optional_url(content, field) for field in fields),
    )


@validates(ContentKind.GOOGLE_REVIEW)
def _validate_google_review(content: Content) -> Optional[str]:
    error = _require_text(content, "placeId", "google-review")
    if error:
        return error
    if len(content["placeId"].strip()) < GOOGLE_PLACE_ID_MIN_LENGTH:
        return f"content.placeId must be at least {GOOGLE_PLACE_ID_MIN_LENGTH} characters"
    return _require_text(content, "businessName", "google-review")


@validates(ContentKind.MULTI_REVIEW)
def _validate_multi_review(content: Content) -> Optional[str]:
    error = _first_error(
        _require_text(content, "businessName", "multi-review"),
        _require_list(content, "platforms", "content.platforms requires at least one review platform"),
    )
    if error:
        return error
    platforms = [p for p in content["platforms"] if isinstance(p, dict)]
    with_url = [p for p in platforms if _has_text(p, "url")]
    if not with_url:
        return "content.platforms requires at least one platform with a url"
    for platform in with_url:
        if not is_safe_url(platform["url"]):
            return "content.platforms[].url must be a public http:// or https:// URL"
    return None


@validates(ContentKind.FEEDBACK)
def _validate_feedback(content: Content) -> Optional[str]:
    return _first_error(
        _require_text(content, "businessName", "feedback"),
        _require_choice(content, "ratingType", FEEDBACK_RATING_TYPES, required=False),
    )


@validates(ContentKind.EVENT)
def _validate_event(content: Content) -> Optional[str]:
    error = _first_error(
        _require_text(content, "title", "event"),
        _require_text(content, "startDate", "event"),
        _require_text(content, "endDate", "event"),
    )
    if error:
        return error
    start = _parse_datetime(content["startDate"])
    if start is None:
        return "content.startDate is not a valid ISO 8601 date"
    end = _parse_datetime(content["endDate"])
    if end is None:
        return "content.endDate is not a valid ISO 8601 date"
    if end <= start:
        return "content.endDate must be after content.startDate"
    return None


@validates(ContentKind.GEO)
def _validate_geo(content: Content) -> Optional[str]:
    if content.get("latitude") is None:
        return "content.latitude is required for geo content"
    if content.get("longitude") is None:
        return "content.longitude is required for geo content"
    latitude = _as_number(content["latitude"])
    if latitude is None:
        return "content.latitude must be a number"
    longitude = _as_number(content["longitude"])
    if longitude is None:
        return "content.longitude must be a number"
    if not -90 <= latitude <= 90:
        return "content.latitude must be between -90 and 90"
    if not -180 <= longitude <= 180:
        return "content.longitude must be between -180 and 180"
    return None


@validates(ContentKind.PDF)
def _validate_pdf(content: Content) -> Optional[str]:
    return _first_error(
        _require_any_text(content, ("fileUrl", "fileName"), "pdf"),
        _check_optional_url(content, "fileUrl"),
    )


@validates(ContentKind.IMAGES)
def _validate_images(content: Content) -> Optional[str]:
    return _require_list(content, "images", "content.images requires at least one image")


@validates(ContentKind.VIDEO)
def _validate_video(content: Content) -> Optional[str]:
    return _first_error(
        _require_any_text(content, ("videoUrl", "embedUrl"), "video"),
        _check_optional_url(content, "videoUrl"),
        _check_optional_url(content, "embedUrl"),
    )


@validates(ContentKind.MP3)
def _validate_mp3(content: Content) -> Optional[str]:
    return _first_error(
        _require_any_text(content, ("audioUrl", "embedUrl"), "mp3"),
        _check_optional_url(content, "audioUrl"),
        _check_optional_url(content, "embedUrl"),
    )


@validates(ContentKind.MENU)
def _validate_menu(content: Content) -> Optional[str]:
    return _first_error(
        _require_text(content, "restaurantName", "menu"),
        _require_list(content, "categories", "content.categories requires at least one menu category"),
    )


@validates(ContentKind.BUSINESS)
def _validate_business(content: Content) -> Optional[str]:
    return _first_error(
        _require_text(content, "name", "business"),
        _check_optional_url(content, "website"),
    )


@validates(ContentKind.LINKS)
def _validate_links(content: Content) -> Optional[str]:
    return _first_error(
        _require_text(content, "title", "links"),
        _require_list(content, "links", "content.links requires at least one link"),
    )


@validates(ContentKind.COUPON)
def _validate_coupon(content: Content) -> Optional[str]:
    return _first_error(
        _require_text(content, "businessName", "coupon"),
        _require_text(content, "headline", "coupon"),
    )


@validates(ContentKind.SOCIAL)
def _validate_social(content: Content) -> Optional[str]:
    return _first_error(
        _require_text(content, "name", "social"),
        _require_list(content, "links", "content.links requires at least one social link"),
    )


_MISSING = set(ContentKind) - set(_VALIDATORS)
if _MISSING:
    raise RuntimeError(
        "No content validator registered for: "
        + ", ".join(sorted(kind.value for kind in _MISSING))
    )


def supported_kinds() -> list:
    return [kind.value for kind in ContentKind]


def validate_content(content: Any, kind: str) -> ValidationResult:
    """Validate ``content`` against the rules for ``kind``."""
    try:
        content_kind = ContentKind(kind)
    except ValueError:
        return ValidationResult(
            valid=False,
            error=f"Unknown content type: {kind!r}. Supported types: {', '.join(supported_kinds())}",
        )

    if not isinstance(content, Mapping):
        return ValidationResult(valid=False, error="content must be a JSON object")

    error = _VALIDATORS[content_kind](content)
    if error:
        return ValidationResult(valid=False, error=error)
    return ValidationResult(valid=True)
