# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_rp

"""
Extraction of authorization response parameters from redirects and form_post bodies.
"""

from collections.abc import Mapping
from typing import Any
from urllib.parse import parse_qsl, urlsplit

from bs4 import BeautifulSoup
from pydantic import ValidationError

from coreason_rp.exceptions import AuthorizationError, ConfigurationError
from coreason_rp.models import AuthorizationResponse


def _flatten(pairs: list[tuple[str, str]]) -> dict[str, str]:
    params: dict[str, str] = {}
    for name, value in pairs:
        # Repeated parameters keep their first value
        params.setdefault(name, value)
    return params


def parse_response(params: Mapping[str, Any]) -> AuthorizationResponse:
    """
    Builds an AuthorizationResponse from an already extracted mapping.

    Sequence values (as produced by some web frameworks) are reduced to their first element.
    """
    flat: dict[str, str] = {}
    for name, value in params.items():
        if isinstance(value, (list, tuple)):
            if not value:
                continue
            value = value[0]
        if value is None:
            continue
        flat[str(name)] = str(value)
    try:
        return AuthorizationResponse(**flat)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid authorization response parameters: {e}") from e


def parse_callback(url: str) -> AuthorizationResponse:
    """
    Extracts the response parameters from a redirect URL.

    The code flow returns parameters in the query string, implicit and hybrid flows in the
    fragment. The fragment is read as a query string ("#" replaced with "?"); when both are
    present the fragment values win.
    """
    if "#" in url:
        base, _, fragment = url.partition("#")
        query_params = _flatten(parse_qsl(urlsplit(base).query, keep_blank_values=True))
        fragment_params = _flatten(parse_qsl(urlsplit(f"?{fragment}").query, keep_blank_values=True))
        return parse_response({**query_params, **fragment_params})
    return parse_response(_flatten(parse_qsl(urlsplit(url).query, keep_blank_values=True)))


def parse_form_post(body: str | bytes) -> AuthorizationResponse:
    """
    Extracts the response parameters of ``response_mode=form_post``.

    Accepts either the ``application/x-www-form-urlencoded`` POST body received at the
    redirect URI, or the auto-submitting HTML page rendered by the OP, whose hidden
    ``<input>`` fields carry the parameters.
    """
    if isinstance(body, bytes):
        body = body.decode("utf-8")
    stripped = body.strip()
    if not stripped.startswith("<"):
        return parse_response(_flatten(parse_qsl(stripped, keep_blank_values=True)))

    soup = BeautifulSoup(stripped, "html.parser")
    form = soup.find("form")
    container = form if form is not None else soup
    pairs = []
    for input_field in container.find_all("input", type="hidden"):
        name = input_field.get("name")
        if name:
            pairs.append((str(name), str(input_field.get("value", ""))))
    return parse_response(_flatten(pairs))


def callback_params(source: str | bytes | Mapping[str, Any]) -> AuthorizationResponse:
    """
    Dispatches to the parser matching the shape of ``source``: a mapping, a redirect URL or
    a form_post body.
    """
    if isinstance(source, Mapping):
        return parse_response(source)
    text = source.decode("utf-8") if isinstance(source, bytes) else source
    # Absolute redirect URLs carry a scheme and a host, relative ones start with a delimiter
    parts = urlsplit(text)
    if (parts.scheme and parts.netloc) or text.startswith(("/", "?", "#")):
        return parse_callback(text)
    return parse_form_post(text)


def ensure_success(response: AuthorizationResponse) -> AuthorizationResponse:
    """
    Raises:
        AuthorizationError: If the response is an OAuth error response (e.g. ``login_required``).
    """
    if response.is_error:
        raise AuthorizationError(
            error=response.error or "",
            error_description=response.error_description,
            state=response.state,
            error_uri=response.error_uri,
        )
    return response
