import base64
import json
import os
import time
import uuid
from contextvars import ContextVar
from typing import Any, Callable, Dict, List, Optional, Union

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError

REQUEST_TIMEOUT = (10, 30)
REQUEST_SESSION = requests.Session()
SECRETS_CLIENT: Any = None
SPOTIFY_API_URL = "https://api.spotify.com/v1"
SPOTIFY_TOKEN_URL = "https://accounts.spotify.com/api/token"
SPOTIFY_TRACK_URI_PREFIX = "spotify:track:"
SPOTIFY_MAX_TRACKS_PER_CALL = 100
REQUIRED_CREDENTIAL_KEYS = ("client_id", "client_secret", "refresh_token", "user_id")

RUN_ID_VAR: ContextVar[str] = ContextVar("run_id", default="")


def _env_flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in {"1", "true", "yes"}


ENV_CONFIG = {
    "region": os.environ.get("AWS_DEFAULT_REGION"),
    "secret_name": os.environ.get("SPOTIFY_ACCESS"),
    # uris per replace/append call
    "track_batch_limit": int(os.environ.get("SPOTIFY_TRACK_BATCH_LIMIT", "50")),
    "rate_limit_max_retries": int(os.environ.get("RATE_LIMIT_MAX_RETRIES", "20")),
    "playlist_lookup_limit": int(os.environ.get("PLAYLIST_LOOKUP_LIMIT", "50")),
    "suppress_initial_replace_server_error": _env_flag(
        "SUPPRESS_INITIAL_REPLACE_SERVER_ERROR"
    ),
}


def log(level: str, msg: str, **details: Any) -> None:
    prefix = {
        "info": "[info]",
        "warning": "[warning]",
        "critical": "[critical]",
    }.get(level, "[info]")
    ctx = {}
    run_id = RUN_ID_VAR.get()
    if run_id:
        ctx["run_id"] = run_id
    payload = {**ctx, **details} if details or ctx else None
    suffix = f" {json.dumps(payload, sort_keys=True, default=str)}" if payload else ""
    print(f"{prefix} {msg}{suffix}")


class HTTPError(Exception):
    def __init__(
        self,
        status_code: int,
        message: str,
        details: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.details = details
        self.headers = headers or {}

    def to_body(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"message": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class CredentialStoreError(Exception):
    pass


class SecretUnavailable(CredentialStoreError):
    """The secret could not be read or is not a usable credential blob."""


class SecretWriteFailed(CredentialStoreError):
    """The rotated credentials could not be written back."""


class SpotifyAPIError(Exception):
    def __init__(
        self,
        status_code: int,
        message: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.headers = headers or {}


class RateLimitExceeded(SpotifyAPIError):
    pass


class TokenRefreshFailed(SpotifyAPIError):
    pass


# Outcome of a single remote call, consumed by run_with_retry.


class Success:
    def __init__(self, value: Any) -> None:
        self.value = value

    def __repr__(self) -> str:
        return f"Success({self.value!r})"


class RateLimited:
    def __init__(self, retry_after_s: int, error: SpotifyAPIError) -> None:
        self.retry_after_s = retry_after_s
        self.error = error

    def __repr__(self) -> str:
        return f"RateLimited(retry_after_s={self.retry_after_s})"


class Fatal:
    def __init__(self, error: Exception) -> None:
        self.error = error

    def __repr__(self) -> str:
        return f"Fatal({self.error!r})"


CallResult = Union[Success, RateLimited, Fatal]


class PlaylistNotFound:
    def __init__(self, playlist_id: str) -> None:
        self.playlist_id = playlist_id


class LookupAuthError:
    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message


def _get_config_value(config_key: str) -> str:
    value = ENV_CONFIG.get(config_key)
    if not value:
        raise HTTPError(502, f"missing environment configuration for {config_key}")
    return value


def get_secrets_client(region: Optional[str] = None) -> Any:
    global SECRETS_CLIENT
    if SECRETS_CLIENT is None:
        SECRETS_CLIENT = boto3.client("secretsmanager", region_name=region)
    return SECRETS_CLIENT


class CredentialStore:
    """Reads and writes the Spotify credential blob kept in Secrets Manager.

    The blob is always written in full. There is no locking: two invocations
    refreshing the token at the same time both write, and the last one wins.
    """

    def __init__(self, secret_id: str, client: Any = None, region: Optional[str] = None):
        self.secret_id = secret_id
        self.client = client if client is not None else get_secrets_client(region)

    def get(self) -> Dict[str, Any]:
        try:
            response = self.client.get_secret_value(SecretId=self.secret_id)
        except (ClientError, BotoCoreError) as exc:
            raise SecretUnavailable(
                f"unable to read secret {self.secret_id}: {exc}"
            ) from exc

        try:
            credentials = json.loads(response["SecretString"])
        except (KeyError, TypeError, json.JSONDecodeError) as exc:
            raise SecretUnavailable(
                f"secret {self.secret_id} is not valid JSON"
            ) from exc

        if not isinstance(credentials, dict):
            raise SecretUnavailable(f"secret {self.secret_id} must be a JSON object")

        missing = [key for key in REQUIRED_CREDENTIAL_KEYS if not credentials.get(key)]
        if missing:
            raise SecretUnavailable(
                f"secret {self.secret_id} missing {', '.join(missing)}"
            )

        log("info", "credentials_loaded", secret_id=self.secret_id)
        return credentials

    def put(self, credentials: Dict[str, Any]) -> None:
        try:
            self.client.put_secret_value(
                SecretId=self.secret_id,
                SecretString=json.dumps(credentials),
            )
        except (ClientError, BotoCoreError) as exc:
            raise SecretWriteFailed(
                f"unable to write secret {self.secret_id}: {exc}"
            ) from exc
        log("info", "credentials_persisted", secret_id=self.secret_id)


class TokenRefresher:
    def __init__(self, store: CredentialStore, credentials: Dict[str, Any]):
        self.store = store
        self.credentials = credentials

    def on_rotate(self, new_access_token: str, lifetime_s: int) -> None:
        now = int(time.time())
        expires_at = now + int(lifetime_s)
        self.credentials["access_token"] = new_access_token
        self.credentials["token_expiration"] = expires_at
        log(
            "info",
            "spotify_token_rotated",
            lifetime_s=int(lifetime_s),
            token_expiration=expires_at,
        )
        # write failures propagate; the invocation must not continue unsaved
        self.store.put(self.credentials)


def _retry_after_seconds(headers: Any) -> int:
    value = (headers or {}).get("Retry-After")
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _error_message(resp: requests.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return error.get("message") or f"HTTP {resp.status_code}"
    if isinstance(error, str):
        return payload.get("error_description") or error
    return resp.text or f"HTTP {resp.status_code}"


def classify_response(resp: requests.Response) -> CallResult:
    if resp.status_code < 400:
        if not resp.text:
            return Success({})
        try:
            return Success(resp.json())
        except ValueError:
            return Fatal(
                SpotifyAPIError(
                    502, f"invalid JSON in Spotify response (HTTP {resp.status_code})"
                )
            )

    error = SpotifyAPIError(
        resp.status_code, _error_message(resp), headers=dict(resp.headers or {})
    )
    if resp.status_code == 429:
        return RateLimited(_retry_after_seconds(resp.headers), error)
    return Fatal(error)


class SpotifyUser:
    """Spotify Web API client acting on behalf of the stored user.

    The access token is refreshed when it is known to have expired, or when
    Spotify answers 401. Every refresh is reported to ``on_token_rotated``.
    """

    def __init__(
        self,
        credentials: Dict[str, Any],
        on_token_rotated: Callable[[str, int], None],
        session: Optional[requests.Session] = None,
    ):
        self.user_id = credentials["user_id"]
        self.client_id = credentials["client_id"]
        self.client_secret = credentials["client_secret"]
        self.refresh_token = credentials["refresh_token"]
        self.access_token = credentials.get("access_token") or ""
        self.token_expiration = int(credentials.get("token_expiration") or 0)
        self.on_token_rotated = on_token_rotated
        self.session = session if session is not None else REQUEST_SESSION

    def token_expired(self) -> bool:
        if not self.access_token:
            return True
        if not self.token_expiration:
            return False
        return int(time.time()) >= self.token_expiration

    def refresh_access_token(self) -> str:
        resp = self.session.post(
            SPOTIFY_TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": self.refresh_token,
            },
            auth=(self.client_id, self.client_secret),
            timeout=REQUEST_TIMEOUT,
        )
        if resp.status_code >= 400:
            message = _error_message(resp)
            log(
                "warning",
                "Spotify token refresh failed",
                status=resp.status_code,
                error=message,
            )
            raise TokenRefreshFailed(
                resp.status_code,
                f"token refresh failed: {message}",
                headers=dict(resp.headers or {}),
            )

        try:
            payload = resp.json()
        except ValueError as exc:
            raise TokenRefreshFailed(502, "invalid JSON from Spotify token endpoint") from exc
        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            log("critical", "Spotify response missing access_token")
            raise TokenRefreshFailed(502, "Spotify token missing")

        lifetime_s = int(payload.get("expires_in") or 0)
        if payload.get("refresh_token") and payload["refresh_token"] != self.refresh_token:
            log("warning", "Spotify offered a rotated refresh token; keeping stored one")

        self.access_token = token
        self.token_expiration = int(time.time()) + lifetime_s
        log("info", "spotify_token_refreshed", lifetime_s=lifetime_s)
        self.on_token_rotated(token, lifetime_s)
        return token

    def _send(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]],
        json_body: Optional[Dict[str, Any]],
    ) -> requests.Response:
        headers = {"Authorization": f"Bearer {self.access_token}"}
        data = None
        if json_body is not None:
            headers["Content-Type"] = "application/json"
            data = json.dumps(json_body)
        return self.session.request(
            method,
            url,
            headers=headers,
            params=params,
            data=data,
            timeout=REQUEST_TIMEOUT,
        )

    def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> CallResult:
        url = f"{SPOTIFY_API_URL}{path}"
        try:
            if self.token_expired():
                self.refresh_access_token()
            resp = self._send(method, url, params, json_body)
            if resp.status_code == 401:
                log("info", "Spotify access token rejected; refreshing", url=url)
                # forces a refresh on the next attempt if this one fails
                self.access_token = ""
                self.refresh_access_token()
                resp = self._send(method, url, params, json_body)
        except TokenRefreshFailed as exc:
            if exc.status_code == 429:
                return RateLimited(_retry_after_seconds(exc.headers), exc)
            return Fatal(exc)
        except requests.RequestException as exc:
            return Fatal(SpotifyAPIError(502, f"spotify request failed: {exc}"))

        if resp.status_code >= 400:
            log(
                "warning",
                f"Spotify {method} failed",
                url=url,
                status=resp.status_code,
                body=resp.text,
            )
        return classify_response(resp)

    def playlists(self, limit: int = 50) -> CallResult:
        return self.request(
            "GET", f"/users/{self.user_id}/playlists", params={"limit": limit}
        )

    def replace_tracks(self, playlist_id: str, uris: List[str]) -> CallResult:
        return self.request(
            "PUT", f"/playlists/{playlist_id}/tracks", json_body={"uris": uris}
        )

    def add_tracks(self, playlist_id: str, uris: List[str]) -> CallResult:
        return self.request(
            "POST", f"/playlists/{playlist_id}/tracks", json_body={"uris": uris}
        )


def sleep_for(seconds: float) -> None:
    if seconds > 0:
        time.sleep(seconds)


def run_with_retry(
    operation: Callable[[], CallResult], max_retries: Optional[int] = None
) -> Any:
    """Run ``operation`` until it stops being rate limited.

    Each rate-limited attempt waits ``Retry-After + 1`` seconds. Once more than
    ``max_retries`` retries have happened, the next rate limit is raised as
    ``RateLimitExceeded``. The sleep blocks the whole invocation and does not
    look at the remaining Lambda time.
    """
    limit = ENV_CONFIG["rate_limit_max_retries"] if max_retries is None else max_retries
    retries = 0

    while True:
        result = operation()
        if isinstance(result, Success):
            return result.value
        if isinstance(result, Fatal):
            raise result.error
        if not isinstance(result, RateLimited):
            raise TypeError(f"unexpected call result {result!r}")

        if retries > limit:
            log("critical", "Rate limit retries exhausted", retries=retries)
            raise RateLimitExceeded(
                429,
                f"still rate limited after {retries} retries",
                headers=result.error.headers,
            ) from result.error
        sleep_s = result.retry_after_s + 1
        log(
            "warning",
            "spotify_rate_limited",
            retry_after_s=result.retry_after_s,
            sleep_s=sleep_s,
            attempt=retries + 1,
        )
        sleep_for(sleep_s)
        retries += 1


def resolve_playlist(
    user: SpotifyUser, playlist_id: str, limit: Optional[int] = None
) -> Union[Dict[str, Any], PlaylistNotFound, LookupAuthError]:
    lookup_limit = limit or ENV_CONFIG["playlist_lookup_limit"]
    try:
        payload = run_with_retry(lambda: user.playlists(limit=lookup_limit))
    except SpotifyAPIError as exc:
        if exc.status_code in (400, 401):
            return LookupAuthError(exc.status_code, exc.message)
        raise

    for playlist in payload.get("items") or []:
        if playlist and playlist.get("id") == playlist_id:
            log("info", "playlist_resolved", playlist_id=playlist_id)
            return playlist

    log(
        "warning",
        "Playlist not found for user",
        playlist_id=playlist_id,
        searched=len(payload.get("items") or []),
    )
    return PlaylistNotFound(playlist_id)


def to_track_uri(track_id: str) -> str:
    return f"{SPOTIFY_TRACK_URI_PREFIX}{track_id}"


def _record_snapshot(playlist: Dict[str, Any], payload: Any) -> None:
    if isinstance(payload, dict) and payload.get("snapshot_id"):
        playlist["snapshot_id"] = payload["snapshot_id"]


def _valid_batch_limit(value: Any) -> bool:
    return (
        isinstance(value, int)
        and not isinstance(value, bool)
        and 1 <= value <= SPOTIFY_MAX_TRACKS_PER_CALL
    )


def _track_batch_limit(batch_limit: Optional[int]) -> int:
    if batch_limit is not None:
        if not _valid_batch_limit(batch_limit):
            raise ValueError(
                f"batch_limit must be between 1 and {SPOTIFY_MAX_TRACKS_PER_CALL}, "
                f"got {batch_limit!r}"
            )
        return batch_limit
    limit = ENV_CONFIG.get("track_batch_limit")
    if not _valid_batch_limit(limit):
        raise HTTPError(
            502,
            "invalid environment configuration for track_batch_limit",
            details={"value": limit, "max": SPOTIFY_MAX_TRACKS_PER_CALL},
        )
    return limit


def upload_tracks(
    user: SpotifyUser,
    playlist: Dict[str, Any],
    track_ids: List[str],
    batch_limit: Optional[int] = None,
    suppress_initial_server_error: Optional[bool] = None,
) -> Optional[str]:
    """Replace the playlist's tracks with ``track_ids``.

    The first batch goes through a replace call, so an empty list clears the
    playlist. Later batches are appended in order.
    """
    limit = _track_batch_limit(batch_limit)
    if suppress_initial_server_error is None:
        suppress_initial_server_error = ENV_CONFIG["suppress_initial_replace_server_error"]
    playlist_id = playlist["id"]
    uris = [to_track_uri(track_id) for track_id in track_ids]
    total = len(uris)

    first_batch = uris[:limit]
    try:
        payload = run_with_retry(lambda: user.replace_tracks(playlist_id, first_batch))
        _record_snapshot(playlist, payload)
    except SpotifyAPIError as exc:
        if not (suppress_initial_server_error and exc.status_code == 500):
            raise
        log(
            "warning",
            "Suppressed server error on initial replace",
            playlist_id=playlist_id,
            error=exc.message,
            batch_size=len(first_batch),
        )
    processed = len(first_batch)
    log("info", "playlist_tracks_replaced", playlist_id=playlist_id, count=processed)

    start = processed
    while start < total:
        batch = uris[start : start + limit]
        payload = run_with_retry(lambda: user.add_tracks(playlist_id, batch))
        _record_snapshot(playlist, payload)
        processed += len(batch)
        start += len(batch)
        log(
            "info",
            "playlist_tracks_appended",
            playlist_id=playlist_id,
            count=len(batch),
            processed=processed,
        )

    log(
        "info",
        "playlist_upload_complete",
        playlist_id=playlist_id,
        processed=processed,
        total=total,
    )
    return playlist.get("snapshot_id")


def build_response(
    status_code: int, body: Dict[str, Any], headers: Optional[Dict[str, str]] = None
) -> Dict[str, Any]:
    final_headers = {"Content-Type": "application/json"}
    if headers:
        final_headers.update(headers)
    return {
        "statusCode": status_code,
        "headers": final_headers,
        "body": json.dumps(body),
    }


def parse_json_body(event: Dict[str, Any]) -> Dict[str, Any]:
    body = event.get("body")
    if body is None:
        raise HTTPError(400, "request body is required")

    if event.get("isBase64Encoded"):
        try:
            body = base64.b64decode(body).decode("utf-8")
        except Exception as exc:  # pylint: disable=broad-except
            raise HTTPError(400, "invalid base64 body") from exc

    try:
        data = json.loads(body)
    except json.JSONDecodeError as exc:
        raise HTTPError(400, "body must be valid JSON") from exc

    if not isinstance(data, dict):
        raise HTTPError(400, "body must be a JSON object")

    return data


def parse_invocation_payload(event: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(event, dict):
        raise HTTPError(400, "event must be a JSON object")
    payload = parse_json_body(event) if "body" in event else event

    playlist_id = payload.get("playlist_id", payload.get("spotify_playlist_id"))
    if not isinstance(playlist_id, str) or not playlist_id.strip():
        raise HTTPError(400, "playlist_id must be a non-empty string")

    track_ids = payload.get("track_ids", payload.get("spotify_track_ids"))
    if not isinstance(track_ids, list) or not all(
        isinstance(track_id, str) and track_id for track_id in track_ids
    ):
        raise HTTPError(400, "track_ids must be an array of non-empty strings")

    return {"playlist_id": playlist_id.strip(), "track_ids": track_ids}


def process_event(event: Dict[str, Any]) -> Dict[str, Any]:
    payload = parse_invocation_payload(event)
    playlist_id = payload["playlist_id"]
    track_ids = payload["track_ids"]

    store = CredentialStore(
        _get_config_value("secret_name"), region=_get_config_value("region")
    )
    credentials = store.get()
    refresher = TokenRefresher(store, credentials)
    user = SpotifyUser(credentials, on_token_rotated=refresher.on_rotate)

    playlist = resolve_playlist(user, playlist_id)
    if isinstance(playlist, LookupAuthError):
        log(
            "warning",
            "Spotify rejected playlist lookup",
            status=playlist.status_code,
            message=playlist.message,
        )
        return build_response(playlist.status_code, {"message": playlist.message})
    if isinstance(playlist, PlaylistNotFound):
        return build_response(
            400, {"message": f"could not find playlist with id {playlist_id}"}
        )

    snapshot_id = upload_tracks(user, playlist, track_ids)
    return build_response(
        200,
        {
            "snapshot_id": snapshot_id,
            "message": f"saved {len(track_ids)} tracks to playlist {playlist_id}",
        },
    )


def handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    run_id = uuid.uuid4().hex
    token = RUN_ID_VAR.set(run_id)
    log(
        "info",
        "invocation_start",
        aws_request_id=getattr(context, "aws_request_id", None),
        function_name=getattr(context, "function_name", None),
    )
    try:
        return process_event(event)
    except HTTPError as exc:
        log(
            "warning", "Handled HTTP error", status=exc.status_code, message=exc.message
        )
        return build_response(exc.status_code, exc.to_body(), exc.headers)
    except Exception as exc:  # pylint: disable=broad-except
        log(
            "critical",
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return build_response(502, {"message": "internal server error"})
    finally:
        RUN_ID_VAR.reset(token)
