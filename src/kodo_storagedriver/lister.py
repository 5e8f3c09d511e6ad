from kodo_storagedriver.backend import LIST_MAX
from kodo_storagedriver.context import check
from kodo_storagedriver.errors import error_info
from kodo_storagedriver.errors import KodoOperationError
from kodo_storagedriver.errors import TransientError
from typing import NamedTuple

import logging


logger = logging.getLogger(__name__)

LIST_ATTEMPTS = 2


class Listing(NamedTuple):
    entries: list
    prefixes: list


def list_page_with_retry(
    client, prefix, delimiter="", marker="", limit=LIST_MAX, ctx=None
):
    """Fetch one page, repeating the identical call on a transient failure."""
    for attempt in range(1, LIST_ATTEMPTS + 1):
        check(ctx)
        try:
            return client.list_page(prefix, delimiter, marker, limit, ctx=ctx)
        except TransientError as e:
            if attempt == LIST_ATTEMPTS:
                raise KodoOperationError(
                    f"Kodo list of prefix={prefix!r} still failing after "
                    f"{LIST_ATTEMPTS} attempts: {e}"
                ) from e
            logger.info("list retry triggered for prefix=%r: %s", prefix, error_info(e))


def iter_pages(client, prefix, delimiter="", limit=LIST_MAX, ctx=None):
    """Yield every page under ``prefix``, following markers to the end."""
    marker = ""
    while True:
        page = list_page_with_retry(client, prefix, delimiter, marker, limit, ctx)
        yield page
        if not page.marker:
            return
        marker = page.marker


def list_all(client, prefix, delimiter="", limit=LIST_MAX, ctx=None):
    """Union of entries and common prefixes across all pages, in backend order."""
    entries = {}
    prefixes = {}
    for page in iter_pages(client, prefix, delimiter, limit, ctx):
        for item in page.items:
            entries.setdefault(item.key, item)
        for common in page.prefixes:
            prefixes.setdefault(common, None)
    return Listing(list(entries.values()), list(prefixes))
