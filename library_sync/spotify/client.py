"""
Spotify API client singleton for library-sync.

This module provides a singleton wrapper around the spotipy library,
ensuring that only one Spotify client instance exists throughout
the application lifetime.

Singleton Pattern:
    SpotifyClient uses the singleton pattern - it must be initialized
    once with init(), and subsequent calls to SpotifyClient() return
    the same instance. Attempting to call init() twice raises an error.

Authentication:
    The library endpoints (saved tracks, private playlists) need user
    authorization, so the client always uses the OAuth flow with the
    scopes in OAUTH_SCOPES. The token is cached on disk and refreshed by
    spotipy.

Retries:
    spotipy normally retries 429 and 5xx responses internally, which hides
    the Retry-After header and blocks for unbounded time. The client gives
    spotipy a plain requests.Session so every failure surfaces at once as a
    SpotifyError, and the sync engine applies its own rate-limit policy.

Usage:
    # At application startup (once only)
    from library_sync.spotify.client import SpotifyClient

    SpotifyClient.init(
        client_id="your_client_id",
        client_secret="your_client_secret"
    )

    # Later, anywhere in the code
    client = SpotifyClient()
    page = client.list_primary(offset=0, limit=50)
"""

from pathlib import Path
from typing import Any

import requests
import spotipy
from spotipy.cache_handler import CacheFileHandler
from spotipy.oauth2 import SpotifyOAuth

from library_sync.core.config import DEFAULT_REDIRECT_URI
from library_sync.core.exceptions import SpotifyError


OAUTH_SCOPES = "user-library-read playlist-read-private playlist-read-collaborative"

# Endpoint limits of the Web API
MAX_PAGE_SIZE = 50
MAX_PLAYLIST_ITEMS_PAGE = 100
MAX_ARTISTS_PER_REQUEST = 50
MAX_ALBUMS_PER_REQUEST = 20

REQUEST_TIMEOUT_SECONDS = 10


class SpotifyClientMeta(type):
    """
    Metaclass implementing the singleton pattern for SpotifyClient.

    This metaclass ensures:
    1. SpotifyClient cannot be instantiated before init() is called
    2. init() can only be called once
    3. After init(), SpotifyClient() always returns the same instance

    Attributes:
        _instance: The singleton SpotifyClient instance, or None.
        _initialized: Flag indicating whether init() has been called.
    """

    _instance: "SpotifyClient | None" = None
    _initialized: bool = False

    def __call__(cls) -> "SpotifyClient":
        """
        Get the SpotifyClient singleton instance.

        Raises:
            SpotifyError: If init() has not been called yet.
        """
        if cls._instance is None:
            raise SpotifyError(
                "SpotifyClient not initialized. Call SpotifyClient.init("
                "client_id, client_secret) first.",
                is_auth_error=True
            )
        return cls._instance

    def init(
        cls,
        client_id: str,
        client_secret: str,
        redirect_uri: str = DEFAULT_REDIRECT_URI,
        cache_path: Path | None = None,
        open_browser: bool = True
    ) -> "SpotifyClient":
        """
        Initialize the SpotifyClient singleton.

        This method must be called exactly once at application startup,
        before any other SpotifyClient operations.

        Args:
            client_id: Spotify application client ID from Developer Dashboard.
            client_secret: Spotify application client secret.
            redirect_uri: Redirect URI registered for the application.
            cache_path: Token cache file. None uses spotipy's default (.cache).
            open_browser: Open the authorization page automatically on
                          first use.

        Returns:
            The initialized SpotifyClient singleton instance.

        Raises:
            SpotifyError: If init() has already been called (singleton violation).
            SpotifyError: If authentication fails (invalid credentials, network error).

        Behavior:
            1. Check that init() hasn't been called before
            2. Create SpotifyOAuth with the library scopes
            3. Create spotipy.Spotify on a plain requests.Session
            4. Test the connection with current_user()
            5. Store instance as singleton
        """
        if cls._initialized:
            raise SpotifyError(
                "SpotifyClient.init() has already been called. "
                "Use SpotifyClient() to get the existing instance.",
                is_auth_error=True
            )

        try:
            cache_handler = None
            if cache_path is not None:
                cache_path.parent.mkdir(parents=True, exist_ok=True)
                cache_handler = CacheFileHandler(cache_path=str(cache_path))

            auth_manager = SpotifyOAuth(
                client_id=client_id,
                client_secret=client_secret,
                redirect_uri=redirect_uri,
                scope=OAUTH_SCOPES,
                cache_handler=cache_handler,
                open_browser=open_browser
            )

            spotify_instance = spotipy.Spotify(
                auth_manager=auth_manager,
                requests_session=requests.Session(),
                requests_timeout=REQUEST_TIMEOUT_SECONDS
            )

            spotify_instance.current_user()

            instance = super().__call__(spotify_instance)
            cls._instance = instance
            cls._initialized = True

            return instance

        except spotipy.SpotifyException as e:
            raise SpotifyError(
                f"Spotify authentication failed: {e}",
                details={"original_error": str(e)},
                is_auth_error=True
            ) from e
        except Exception as e:
            raise SpotifyError(
                f"Failed to initialize Spotify client: {e}",
                details={"original_error": str(e)},
                is_auth_error=True
            ) from e

    def is_initialized(cls) -> bool:
        """Check if the SpotifyClient has been initialized."""
        return cls._initialized

    def reset(cls) -> None:
        """
        Reset the singleton state (for testing only).

        Warning:
            Do not use this in production code. It exists only to
            enable proper test isolation.
        """
        cls._instance = None
        cls._initialized = False


class SpotifyClient(metaclass=SpotifyClientMeta):
    """
    Singleton Spotify API client.

    Exposes exactly the calls the sync engine makes. Each call performs a
    single HTTP request; pagination and pacing are the caller's job.

    Error Translation:
        Every failure is raised as SpotifyError:
            HTTP 429            is_rate_limit=True, retry_after from header
            HTTP 401            is_auth_error=True
            HTTP 5xx            is_transient=True
            Connection/timeout  is_transient=True
            Anything else       plain SpotifyError

    Thread Safety:
        The sync engine uses one worker per run, so the client is only
        called from a single thread at a time.
    """

    def __init__(self, spotify_instance: spotipy.Spotify) -> None:
        """
        Note:
            This constructor is called by the metaclass init() method.
            Do not call directly - use SpotifyClient.init() instead.
        """
        self._spotify = spotify_instance

    # =========================================================================
    # Saved Tracks
    # =========================================================================

    def list_primary(self, offset: int, limit: int = MAX_PAGE_SIZE) -> dict[str, Any]:
        """
        Get one page of the user's saved tracks.

        Args:
            offset: Index of first track to return.
            limit: Page size, capped at 50.

        Returns:
            Paging object with 'items' (each {'added_at', 'track'}) and 'total'.
        """
        return self._call(
            "saved tracks",
            {"offset": offset, "limit": limit},
            self._spotify.current_user_saved_tracks,
            limit=min(limit, MAX_PAGE_SIZE),
            offset=offset
        )

    # =========================================================================
    # Artists and Albums
    # =========================================================================

    def get_several_artists(self, artist_ids: list[str]) -> list[dict[str, Any] | None]:
        """
        Get full artist objects for up to 50 ids.

        Returns:
            One entry per requested id, in request order. Ids Spotify cannot
            resolve come back as None.

        Raises:
            ValueError: If more than 50 ids are given.
        """
        if len(artist_ids) > MAX_ARTISTS_PER_REQUEST:
            raise ValueError(f"At most {MAX_ARTISTS_PER_REQUEST} artist ids per request")
        if not artist_ids:
            return []
        result = self._call(
            "artists",
            {"batch_size": len(artist_ids)},
            self._spotify.artists,
            artist_ids
        )
        return result.get("artists", [])

    def get_several_albums(self, album_ids: list[str]) -> list[dict[str, Any] | None]:
        """
        Get full album objects for up to 20 ids.

        Returns:
            One entry per requested id, in request order. Ids Spotify cannot
            resolve come back as None.

        Raises:
            ValueError: If more than 20 ids are given.
        """
        if len(album_ids) > MAX_ALBUMS_PER_REQUEST:
            raise ValueError(f"At most {MAX_ALBUMS_PER_REQUEST} album ids per request")
        if not album_ids:
            return []
        result = self._call(
            "albums",
            {"batch_size": len(album_ids)},
            self._spotify.albums,
            album_ids
        )
        return result.get("albums", [])

    # =========================================================================
    # Playlists
    # =========================================================================

    def list_collections(self, offset: int, limit: int = MAX_PAGE_SIZE) -> dict[str, Any]:
        """Get one page of the user's playlists (owned and followed)."""
        return self._call(
            "playlists",
            {"offset": offset, "limit": limit},
            self._spotify.current_user_playlists,
            limit=min(limit, MAX_PAGE_SIZE),
            offset=offset
        )

    def collection_items(
        self,
        playlist_id: str,
        offset: int,
        limit: int = MAX_PLAYLIST_ITEMS_PAGE
    ) -> dict[str, Any]:
        """
        Get one page of a playlist's items.

        Returns:
            Paging object with 'items' (each {'added_at', 'added_by', 'track'})
            and 'total'. Episodes are excluded by additional_types.
        """
        return self._call(
            "playlist items",
            {"playlist_id": playlist_id, "offset": offset, "limit": limit},
            self._spotify.playlist_items,
            playlist_id,
            limit=min(limit, MAX_PLAYLIST_ITEMS_PAGE),
            offset=offset,
            additional_types=("track",)
        )

    # =========================================================================
    # Internals
    # =========================================================================

    def _call(self, what: str, details: dict[str, Any], method, *args, **kwargs) -> Any:
        try:
            result = method(*args, **kwargs)
        except spotipy.SpotifyException as e:
            raise _translate_spotify_exception(e, what, details) from e
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise SpotifyError(
                f"Network error while fetching {what}: {e}",
                details={**details, "original_error": str(e)},
                is_transient=True
            ) from e
        except requests.exceptions.RequestException as e:
            raise SpotifyError(
                f"Request failed while fetching {what}: {e}",
                details={**details, "original_error": str(e)}
            ) from e

        if result is None:
            raise SpotifyError(f"Failed to fetch {what}", details=details)
        return result


def _translate_spotify_exception(
    e: spotipy.SpotifyException,
    what: str,
    details: dict[str, Any]
) -> SpotifyError:
    status = e.http_status
    details = {**details, "http_status": status}

    if status == 429:
        retry_after = _parse_retry_after(getattr(e, "headers", None))
        return SpotifyError(
            f"Rate limited while fetching {what}",
            details={**details, "retry_after": retry_after},
            is_rate_limit=True,
            retry_after=retry_after
        )
    if status == 401:
        return SpotifyError(
            "Authentication expired or invalid",
            details=details,
            is_auth_error=True
        )
    if status is not None and status >= 500:
        return SpotifyError(
            f"Spotify server error while fetching {what}: {e.msg}",
            details=details,
            is_transient=True
        )
    return SpotifyError(
        f"Failed to fetch {what}: {e.msg}",
        details={**details, "original_error": str(e)}
    )


def _parse_retry_after(headers: Any) -> int | None:
    """Retry-After in seconds, or None when the header is missing or not a number."""
    if not headers:
        return None
    value = headers.get("Retry-After") or headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return None
