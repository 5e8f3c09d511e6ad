"""Qiniu credential signing.

Private download URLs carry an ``e`` (unix deadline) and a ``token``
parameter, the token being ``<access key>:<urlsafe b64 HMAC-SHA1 of the
URL including e>``. Management requests (CDN refresh) are signed the QBox
way: HMAC-SHA1 over ``path?query\\n`` plus a form-encoded body.
"""

import base64
import hashlib
import hmac
import httpx
import time


FORM_MIME = "application/x-www-form-urlencoded"


def _to_bytes(value):
    if isinstance(value, str):
        return value.encode("utf-8")
    return value


def sign(secret_key, data):
    digest = hmac.new(_to_bytes(secret_key), _to_bytes(data), hashlib.sha1).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii")


def private_url(access_key, secret_key, url, expires, now=None):
    """Sign ``url`` so that it stays valid for ``expires`` seconds."""
    if now is None:
        now = time.time()
    deadline = int(now) + int(expires)
    sep = "&" if "?" in url else "?"
    url = f"{url}{sep}e={deadline}"
    token = f"{access_key}:{sign(secret_key, url)}"
    return f"{url}&token={token}"


class QBoxAuth(httpx.Auth):
    """httpx authentication flow for Qiniu management APIs."""

    requires_request_body = True

    def __init__(self, access_key, secret_key):
        self.access_key = access_key
        self._secret_key = secret_key

    def signature(self, request):
        data = request.url.raw_path + b"\n"
        if request.headers.get("Content-Type") == FORM_MIME and request.content:
            data += request.content
        return f"{self.access_key}:{sign(self._secret_key, data)}"

    def auth_flow(self, request):
        request.headers["Authorization"] = f"QBox {self.signature(request)}"
        yield request
