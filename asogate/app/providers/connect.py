"""App Store Connect metadata client.

Authenticates with short-lived ES256 tokens signed by the account's API key
and reads/writes store listing metadata. Metadata for a locale is split
between two upstream resources:

- app info localizations (name, subtitle), owned by an "app info" container;
- app store version localizations (keywords, description, promotional text,
  what's new, URLs), owned by the editable app version.
"""

import asyncio
import json
import os
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import httpx
import jwt
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from asogate.app.core.config import settings
from asogate.app.core.localization import to_connect_locale
from asogate.app.core.logging import get_log_context, get_logger
from asogate.app.core.metadata_rules import (
    MetadataFields,
    ensure_valid,
    validate_fields,
)
from asogate.app.exceptions import (
    ConfigurationError,
    ResourceNotFoundError,
    UpstreamError,
    ValidationError,
)
from asogate.app.providers.base import BaseProvider
from asogate.app.providers.rate_limit import (
    SOURCE_CONNECT,
    RateLimitConfig,
    RateLimiter,
)

logger = get_logger(__name__)

TOKEN_AUDIENCE = "appstoreconnect-v1"
EDITABLE_VERSION_STATE = "PREPARE_FOR_SUBMISSION"
LIVE_STATES = frozenset({"READY_FOR_SALE", "READY_FOR_DISTRIBUTION"})


# =============================================================================
# Credentials
# =============================================================================


class ConnectCredentials(BaseModel):
    """API key identity; serialized with App Store Connect's camelCase names."""

    model_config = ConfigDict(populate_by_name=True)

    issuer_id: str = Field(alias="issuerId", min_length=1)
    api_key_id: str = Field(alias="apiKeyId", min_length=1)
    private_key_path: str = Field(alias="privateKeyPath", min_length=1)

    @property
    def fingerprint(self) -> str:
        return f"{self.issuer_id}:{self.api_key_id}"

    @property
    def key_file(self) -> Path:
        return Path(self.private_key_path).expanduser()


def load_credentials(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Optional[ConnectCredentials]:
    """Load credentials from the environment, else from the config file.

    Environment variables ``ASC_ISSUER_ID``, ``ASC_KEY_ID`` and
    ``ASC_PRIVATE_KEY_PATH`` win when all three are set.

    Returns:
        Credentials, or None when nothing (usable) is configured.
    """
    env = os.environ if environ is None else environ
    issuer_id = env.get("ASC_ISSUER_ID")
    key_id = env.get("ASC_KEY_ID")
    key_path = env.get("ASC_PRIVATE_KEY_PATH")
    if issuer_id and key_id and key_path:
        return ConnectCredentials(
            issuer_id=issuer_id, api_key_id=key_id, private_key_path=key_path
        )

    path = Path(config_path) if config_path else settings.connect_config_path
    if not path.exists():
        return None
    try:
        return ConnectCredentials.model_validate(json.loads(path.read_text()))
    except (json.JSONDecodeError, PydanticValidationError) as e:
        logger.warning(f"Ignoring unreadable Connect config at {path}: {e}")
        return None


def save_credentials(
    credentials: ConnectCredentials, config_path: Optional[Path] = None
) -> Path:
    """Persist credentials to the per-user config file (mode 0600)."""
    path = Path(config_path) if config_path else settings.connect_config_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(credentials.model_dump(by_alias=True), indent=2))
    path.chmod(0o600)
    logger.info(f"Saved App Store Connect credentials to {path}")
    return path


# =============================================================================
# Tokens
# =============================================================================


@dataclass
class CachedToken:
    token: str
    expires_at: int
    fingerprint: str


class TokenCache:
    """Signs and caches bearer tokens, one per credential fingerprint.

    A token is reused until ``safety_margin_seconds`` before it expires so a
    request never goes out with a token about to lapse.
    """

    def __init__(
        self,
        ttl_seconds: int = 1200,
        safety_margin_seconds: int = 120,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self.safety_margin_seconds = safety_margin_seconds
        self._clock = clock
        self._tokens: Dict[str, CachedToken] = {}

    def get_token(self, credentials: ConnectCredentials) -> str:
        now = int(self._clock())
        cached = self._tokens.get(credentials.fingerprint)
        if cached is not None and now < cached.expires_at - self.safety_margin_seconds:
            return cached.token

        token = self._sign(credentials, now)
        self._tokens[credentials.fingerprint] = CachedToken(
            token=token,
            expires_at=now + self.ttl_seconds,
            fingerprint=credentials.fingerprint,
        )
        logger.debug(f"Generated App Store Connect token for key {credentials.api_key_id}")
        return token

    def _sign(self, credentials: ConnectCredentials, now: int) -> str:
        key_file = credentials.key_file
        if not key_file.exists():
            raise ConfigurationError(f"Private key file not found: {key_file}")

        payload = {
            "iss": credentials.issuer_id,
            "iat": now,
            "exp": now + self.ttl_seconds,
            "aud": TOKEN_AUDIENCE,
        }
        try:
            return jwt.encode(
                payload,
                key_file.read_text(),
                algorithm="ES256",
                headers={"kid": credentials.api_key_id, "typ": "JWT"},
            )
        except (ValueError, TypeError, jwt.PyJWTError) as e:
            raise ConfigurationError(
                f"Cannot sign token with private key {key_file}: {e}"
            ) from e

    def clear(self) -> None:
        self._tokens.clear()


# =============================================================================
# Resources
# =============================================================================


@dataclass
class ConnectApp:
    id: str
    bundle_id: str
    name: str
    primary_locale: str
    version_id: Optional[str] = None
    version_string: Optional[str] = None
    version_state: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ConnectLocalization:
    """Merged app-level and version-level metadata for one locale."""

    locale: str
    name: Optional[str] = None
    subtitle: Optional[str] = None
    keywords: Optional[str] = None
    description: Optional[str] = None
    promotional_text: Optional[str] = None
    whats_new: Optional[str] = None
    support_url: Optional[str] = None
    marketing_url: Optional[str] = None
    app_info_localization_id: Optional[str] = None
    version_localization_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for name in ("name", "subtitle", "keywords", "description", "promotional_text", "whats_new"):
            data[f"{name}_length"] = len(data[name] or "")
        return data


@dataclass
class LocalizationSummary:
    locale: str
    has_app_info: bool = False
    has_version: bool = False
    app_info_localization_id: Optional[str] = None
    version_localization_id: Optional[str] = None


@dataclass
class MetadataUpdateResult:
    locale: str
    before: ConnectLocalization
    after: ConnectLocalization
    fields_updated: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class LocaleUpdateResult:
    locale: str
    success: bool
    fields_updated: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class BatchUpdateResult:
    app_id: str
    status: str  # success | partial | failed
    results: List[LocaleUpdateResult]
    warnings: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["succeeded"] = self.succeeded
        data["failed"] = len(self.results) - self.succeeded
        return data


def _is_absent(error: UpstreamError) -> bool:
    """True for 4xx answers that mean "no such resource" rather than trouble."""
    return 400 <= error.upstream_status < 500 and error.upstream_status != 429


# =============================================================================
# Client
# =============================================================================


class ConnectClient(BaseProvider):
    """App Store Connect API client for listing metadata.

    Usage:
        client = ConnectClient(load_credentials(), http_client=shared_client)
        app = await client.get_app("com.example.app")
        metadata = await client.get_metadata(app.id, "en-US")
    """

    source = SOURCE_CONNECT

    def __init__(
        self,
        credentials: ConnectCredentials,
        http_client: Optional[httpx.AsyncClient] = None,
        limiter: Optional[RateLimiter] = None,
        token_cache: Optional[TokenCache] = None,
        base_url: Optional[str] = None,
        rate_limit: Optional[RateLimitConfig] = None,
    ):
        super().__init__(
            base_url or settings.connect_base_url,
            http_client=http_client,
            limiter=limiter,
            rate_limit=rate_limit,
        )
        self.credentials = credentials
        self.token_cache = token_cache or get_token_cache()

    def _build_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token_cache.get_token(self.credentials)}",
            "Content-Type": "application/json",
        }

    def _error_detail(self, response: httpx.Response) -> Optional[str]:
        try:
            errors = response.json().get("errors") or []
        except ValueError:
            return super()._error_detail(response)
        if errors and isinstance(errors[0], dict):
            return errors[0].get("detail") or errors[0].get("title")
        return response.reason_phrase or None

    async def _api(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        response = await self._request(
            method, self._get_endpoint_url(path), params=params, json=body
        )
        if not response.content:
            return {}
        return response.json()

    async def _list(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """GET a collection; "not found" answers read as an empty collection."""
        try:
            data = await self._api("GET", path, params=params)
        except UpstreamError as e:
            if not _is_absent(e):
                raise
            logger.debug(f"No resources at {path}: {e}")
            return []
        return data.get("data") or []

    # --- lookups -----------------------------------------------------------

    async def validate_credentials(self) -> bool:
        """Check the key file and make a minimal authenticated request."""
        if not self.credentials.key_file.exists():
            raise ConfigurationError(
                f"Private key file not found: {self.credentials.key_file}"
            )
        await self._api("GET", "/v1/apps", params={"limit": 1})
        return True

    async def get_app(self, bundle_id: str) -> ConnectApp:
        """Find an app by bundle id, with its editable version if any.

        Raises:
            ResourceNotFoundError: The account has no app with this bundle id.
        """
        data = await self._api(
            "GET",
            "/v1/apps",
            params={
                "filter[bundleId]": bundle_id,
                "fields[apps]": "name,bundleId,primaryLocale",
                "limit": 1,
            },
        )
        apps = data.get("data") or []
        if not apps:
            raise ResourceNotFoundError(
                f"No app found with bundle ID '{bundle_id}'. Check the bundle ID "
                "and that the API key has access to this app."
            )

        app = apps[0]
        attrs = app.get("attributes") or {}
        version = await self._find_editable_version(app["id"])
        version_attrs = (version or {}).get("attributes") or {}
        return ConnectApp(
            id=app["id"],
            bundle_id=attrs.get("bundleId") or bundle_id,
            name=attrs.get("name") or "",
            primary_locale=attrs.get("primaryLocale") or "",
            version_id=version["id"] if version else None,
            version_string=version_attrs.get("versionString"),
            version_state=version_attrs.get("appStoreState") or version_attrs.get("appVersionState"),
        )

    async def _find_editable_version(self, app_id: str) -> Optional[Dict[str, Any]]:
        versions = await self._list(
            f"/v1/apps/{app_id}/appStoreVersions",
            params={"filter[appStoreState]": EDITABLE_VERSION_STATE, "limit": 1},
        )
        return versions[0] if versions else None

    async def _editable_app_info_id(self, app_id: str) -> Optional[str]:
        """Pick the app info that can still be edited.

        An app that is live and has a pending update owns two containers;
        the one not in a live state accepts writes. Falls back to the first.
        """
        infos = await self._list(f"/v1/apps/{app_id}/appInfos")
        if not infos:
            return None
        for info in infos:
            attrs = info.get("attributes") or {}
            state = attrs.get("appStoreState") or attrs.get("state")
            if state not in LIVE_STATES:
                return info["id"]
        return infos[0]["id"]

    async def _app_info_localization(self, app_id: str, locale: str) -> Optional[Dict[str, Any]]:
        app_info_id = await self._editable_app_info_id(app_id)
        if app_info_id is None:
            return None
        items = await self._list(
            f"/v1/appInfos/{app_info_id}/appInfoLocalizations",
            params={"filter[locale]": locale},
        )
        return items[0] if items else None

    async def _version_localization(self, app_id: str, locale: str) -> Optional[Dict[str, Any]]:
        version = await self._find_editable_version(app_id)
        if version is None:
            return None
        items = await self._list(
            f"/v1/appStoreVersions/{version['id']}/appStoreVersionLocalizations",
            params={"filter[locale]": locale},
        )
        return items[0] if items else None

    async def get_metadata(self, app_id: str, locale: str) -> ConnectLocalization:
        """Read the merged metadata for one locale.

        Either half may be missing (no editable version, locale not added
        yet); missing values are None.
        """
        locale = to_connect_locale(locale)
        app_info_loc, version_loc = await asyncio.gather(
            self._app_info_localization(app_id, locale),
            self._version_localization(app_id, locale),
        )
        info_attrs = (app_info_loc or {}).get("attributes") or {}
        version_attrs = (version_loc or {}).get("attributes") or {}
        return ConnectLocalization(
            locale=locale,
            name=info_attrs.get("name"),
            subtitle=info_attrs.get("subtitle"),
            keywords=version_attrs.get("keywords"),
            description=version_attrs.get("description"),
            promotional_text=version_attrs.get("promotionalText"),
            whats_new=version_attrs.get("whatsNew"),
            support_url=version_attrs.get("supportUrl"),
            marketing_url=version_attrs.get("marketingUrl"),
            app_info_localization_id=app_info_loc["id"] if app_info_loc else None,
            version_localization_id=version_loc["id"] if version_loc else None,
        )

    async def list_localizations(self, app_id: str) -> List[LocalizationSummary]:
        """List every locale present in either localization kind."""
        app_info_id, version = await asyncio.gather(
            self._editable_app_info_id(app_id),
            self._find_editable_version(app_id),
        )
        app_info_locs = (
            await self._list(
                f"/v1/appInfos/{app_info_id}/appInfoLocalizations", params={"limit": 200}
            )
            if app_info_id
            else []
        )
        version_locs = (
            await self._list(
                f"/v1/appStoreVersions/{version['id']}/appStoreVersionLocalizations",
                params={"limit": 200},
            )
            if version
            else []
        )

        summaries: Dict[str, LocalizationSummary] = {}
        for item in app_info_locs:
            locale = (item.get("attributes") or {}).get("locale")
            if locale:
                summary = summaries.setdefault(locale, LocalizationSummary(locale=locale))
                summary.has_app_info = True
                summary.app_info_localization_id = item["id"]
        for item in version_locs:
            locale = (item.get("attributes") or {}).get("locale")
            if locale:
                summary = summaries.setdefault(locale, LocalizationSummary(locale=locale))
                summary.has_version = True
                summary.version_localization_id = item["id"]
        return [summaries[k] for k in sorted(summaries)]

    # --- writes ------------------------------------------------------------

    async def update_metadata(
        self, app_id: str, locale: str, fields: MetadataFields
    ) -> MetadataUpdateResult:
        """Update (or create) one locale's metadata and return before/after.

        Raises:
            ValidationError: Limits exceeded, or a new app-level localization
                would be created without a name.
            ResourceNotFoundError: No app info container or editable version.
        """
        locale = to_connect_locale(locale)
        fields = fields.decoded()
        warnings = ensure_valid(fields)
        log_extra = get_log_context(source=self.source, locale=locale)

        before = await self.get_metadata(app_id, locale)

        app_attrs = fields.app_info_attributes()
        if app_attrs:
            if before.app_info_localization_id:
                await self._api(
                    "PATCH",
                    f"/v1/appInfoLocalizations/{before.app_info_localization_id}",
                    body={
                        "data": {
                            "type": "appInfoLocalizations",
                            "id": before.app_info_localization_id,
                            "attributes": app_attrs,
                        }
                    },
                )
            else:
                if not app_attrs.get("name"):
                    raise ValidationError(
                        [
                            f"Cannot create a new '{locale}' localization without a "
                            "name. Provide name together with subtitle."
                        ]
                    )
                app_info_id = await self._editable_app_info_id(app_id)
                if app_info_id is None:
                    raise ResourceNotFoundError("No app info found for this app.")
                await self._api(
                    "POST",
                    "/v1/appInfoLocalizations",
                    body={
                        "data": {
                            "type": "appInfoLocalizations",
                            "attributes": {"locale": locale, **app_attrs},
                            "relationships": {
                                "appInfo": {"data": {"type": "appInfos", "id": app_info_id}}
                            },
                        }
                    },
                )
                logger.info(f"Created app info localization for {locale}", extra=log_extra)

        version_attrs = fields.version_attributes()
        if version_attrs:
            if before.version_localization_id:
                await self._api(
                    "PATCH",
                    f"/v1/appStoreVersionLocalizations/{before.version_localization_id}",
                    body={
                        "data": {
                            "type": "appStoreVersionLocalizations",
                            "id": before.version_localization_id,
                            "attributes": version_attrs,
                        }
                    },
                )
            else:
                version = await self._find_editable_version(app_id)
                if version is None:
                    raise ResourceNotFoundError(
                        f"No editable version found (state {EDITABLE_VERSION_STATE}). "
                        "Create a new version in App Store Connect first."
                    )
                await self._api(
                    "POST",
                    "/v1/appStoreVersionLocalizations",
                    body={
                        "data": {
                            "type": "appStoreVersionLocalizations",
                            "attributes": {"locale": locale, **version_attrs},
                            "relationships": {
                                "appStoreVersion": {
                                    "data": {"type": "appStoreVersions", "id": version["id"]}
                                }
                            },
                        }
                    },
                )
                logger.info(f"Created version localization for {locale}", extra=log_extra)

        after = await self.get_metadata(app_id, locale)
        logger.info(
            f"Updated metadata for app {app_id}: {', '.join(fields.provided())}",
            extra=log_extra,
        )
        return MetadataUpdateResult(
            locale=locale,
            before=before,
            after=after,
            fields_updated=list(fields.provided()),
            warnings=warnings,
        )

    async def batch_update_metadata(
        self, app_id: str, updates: Sequence[Tuple[str, MetadataFields]]
    ) -> BatchUpdateResult:
        """Update several locales one after another.

        Character limits of every locale are checked before the first
        request; any violation rejects the whole batch.
        """
        prepared = [(to_connect_locale(locale), f.decoded()) for locale, f in updates]

        errors: List[str] = []
        warnings: List[str] = []
        for locale, fields in prepared:
            locale_errors, locale_warnings = validate_fields(fields, prefix=f"[{locale}] ")
            errors.extend(locale_errors)
            warnings.extend(locale_warnings)
        if errors:
            raise ValidationError(
                errors,
                warnings,
                message="Fix character limit violations before updating. No changes were made.",
            )

        results: List[LocaleUpdateResult] = []
        for locale, fields in prepared:
            if fields.is_empty():
                results.append(
                    LocaleUpdateResult(locale=locale, success=False, error="No fields provided")
                )
                continue
            try:
                outcome = await self.update_metadata(app_id, locale, fields)
            except Exception as e:
                logger.warning(
                    f"Metadata update failed for {locale}: {e}",
                    extra=get_log_context(source=self.source, locale=locale),
                )
                results.append(LocaleUpdateResult(locale=locale, success=False, error=str(e)))
            else:
                results.append(
                    LocaleUpdateResult(
                        locale=locale, success=True, fields_updated=outcome.fields_updated
                    )
                )

        succeeded = sum(1 for r in results if r.success)
        if succeeded == len(results):
            status = "success"
        elif succeeded == 0:
            status = "failed"
        else:
            status = "partial"
        return BatchUpdateResult(app_id=app_id, status=status, results=results, warnings=warnings)


# Process-wide token cache
_token_cache: Optional[TokenCache] = None


def get_token_cache() -> TokenCache:
    global _token_cache
    if _token_cache is None:
        _token_cache = TokenCache(
            ttl_seconds=settings.connect_token_ttl_seconds,
            safety_margin_seconds=settings.connect_token_safety_margin_seconds,
        )
    return _token_cache


def reset_token_cache() -> None:
    """Reset the global token cache (for testing)."""
    global _token_cache
    _token_cache = None
