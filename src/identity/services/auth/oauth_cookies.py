"""Single-use cookies carrying OAuth state and nonce across the provider redirect."""

from fastapi import Request, Response

from src.identity.config import Settings


class OAuthCookieSession:
    """
    Request-scoped buffer of OAuth cookie reads and writes.

    Values are read from the incoming request; cookies to set or clear are
    recorded and written to whatever response the handler finally returns via
    ``apply()``, so error responses clear cookies exactly like success ones.
    """

    def __init__(self, request: Request, settings: Settings):
        self._request_cookies = request.cookies
        self._settings = settings
        self._to_set: dict[str, str] = {}
        self._to_clear: set[str] = set()

    def issue(self, name: str, value: str) -> None:
        """Set a cookie on the response."""
        self._to_clear.discard(name)
        self._to_set[name] = value

    def pop(self, name: str) -> str | None:
        """Read a cookie from the request and clear it on the response."""
        self.discard(name)
        value = self._request_cookies.get(name)
        return value or None

    def discard(self, *names: str) -> None:
        """Clear cookies on the response without reading them."""
        for name in names:
            self._to_set.pop(name, None)
            self._to_clear.add(name)

    def apply(self, response: Response) -> Response:
        """Write the recorded cookie changes onto a response."""
        s = self._settings
        for name, value in self._to_set.items():
            response.set_cookie(
                key=name,
                value=value,
                max_age=s.oauth_cookie_max_age_minutes * 60,
                path="/",
                domain=s.oauth_cookie_domain,
                secure=s.oauth_cookie_secure,
                httponly=s.oauth_cookie_http_only,
                samesite=s.oauth_cookie_same_site,
            )
        for name in self._to_clear:
            response.delete_cookie(
                key=name,
                path="/",
                domain=s.oauth_cookie_domain,
                secure=s.oauth_cookie_secure,
                httponly=s.oauth_cookie_http_only,
                samesite=s.oauth_cookie_same_site,
            )
        return response
