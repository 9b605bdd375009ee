"""Page URL construction for the supported pagination strategies."""
from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .models import PaginationType

LOGGER = logging.getLogger(__name__)


def _set_query_params(base_url: str, params: dict) -> str:
    """Set (or overwrite) query parameters, keeping the existing ones."""
    parts = urlsplit(base_url)
    if not parts.scheme or not parts.netloc:
        raise ValueError(f"Invalid URL: {base_url!r}")
    pending = {key: str(value) for key, value in params.items()}
    pairs = []
    # First occurrence of a key takes the new value, repeats of it are dropped.
    for key, value in parse_qsl(parts.query, keep_blank_values=True):
        if key in params:
            if key in pending:
                pairs.append((key, pending.pop(key)))
            continue
        pairs.append((key, value))
    pairs.extend(pending.items())
    return urlunsplit(parts._replace(query=urlencode(pairs)))


def build_url(
    base_url: str,
    page_number: int,
    label: Optional[str] = None,
    strategy: str = PaginationType.QUERY_PARAM.value,
    *,
    page_param: str = "page",
    label_param: str = "label",
    items_per_page: int = 10,
) -> str:
    """Build the URL of one page of a listing.

    Parameters
    ----------
    base_url : str
        Listing URL as submitted with the task
    page_number : int
        1-based page number
    label : str, optional
        Active label, if the task iterates labels
    strategy : str
        Pagination type (``queryParam``, ``path``, ``replace``, ``offset``);
        anything else returns ``base_url`` unchanged
    page_param, label_param : str
        Query parameter names for the ``queryParam``/``offset`` strategies
    items_per_page : int
        Page size for the ``offset`` strategy

    Returns
    -------
    str
        Page URL, or ``base_url`` when the URL cannot be built
    """
    try:
        if strategy == PaginationType.QUERY_PARAM:
            params = {page_param: page_number}
            if label:
                params[label_param] = label
            return _set_query_params(base_url, params)

        if strategy == PaginationType.PATH:
            url = f"{base_url}/{page_number}"
            if label:
                url += f"/{label}"
            return url

        if strategy == PaginationType.REPLACE:
            url = base_url.replace("{page}", str(page_number))
            if label:
                url = url.replace("{label}", label)
            return url

        if strategy == PaginationType.OFFSET:
            params = {"offset": (page_number - 1) * items_per_page}
            if label:
                params[label_param] = label
            return _set_query_params(base_url, params)

    except ValueError as exc:
        LOGGER.error("Error building URL for page %d of %s: %s", page_number, base_url, exc)
        return base_url

    return base_url


def build_page_url(config, base_url: str, page_number: int, label: Optional[str]) -> str:
    """``build_url`` with the pagination settings of an ``ExtractionConfig``."""
    return build_url(
        base_url,
        page_number,
        label,
        config.pagination_type,
        page_param=config.page_param,
        label_param=config.label_param,
        items_per_page=config.items_per_page,
    )
