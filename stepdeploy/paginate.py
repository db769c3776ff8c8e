"""
Pagination for "list all X" calls.

Operations with a botocore paginator go through ``client.get_paginator``.
The Step Functions alias and version listings ship without one, so those
follow the cursor by hand.
"""

import logging
from typing import Any, Callable, Dict, Iterator, List, Optional

from botocore.exceptions import PaginationError

logger = logging.getLogger(__name__)


def iter_pages(client: Any, operation: str, page_size: Optional[int] = None,
               **params: Any) -> Iterator[Dict[str, Any]]:
    """
    Yield every page of ``operation`` from its botocore paginator.

    A service that sends the same token twice makes botocore raise
    ``PaginationError``; that is treated as end-of-stream.

    Args:
        client: boto3 client
        operation: Snake-case operation name, e.g. ``"list_state_machines"``
        page_size: Optional page size hint
        **params: Request parameters
    """
    if page_size:
        params["PaginationConfig"] = {"PageSize": page_size}
    paginator = client.get_paginator(operation)
    try:
        for page in paginator.paginate(**params):
            yield page
    except PaginationError as e:
        logger.debug(f"{operation}: {e}, stop paging")


def collect_pages(client: Any, operation: str, items_key: str, page_size: Optional[int] = None,
                  **params: Any) -> List[Any]:
    """Concatenate ``items_key`` from every page of a paginated operation."""
    items: List[Any] = []
    for page in iter_pages(client, operation, page_size=page_size, **params):
        items.extend(page.get(items_key, []))
    return items


def paginate(fetch: Callable[..., Dict[str, Any]], token_key: str = "nextToken",
             **params: Any) -> Iterator[Dict[str, Any]]:
    """
    Follow ``token_key`` by hand for calls without a botocore paginator.

    A service that echoes the cursor it was just given is treated as
    end-of-stream.

    Args:
        fetch: Bound client method, e.g. ``client.list_state_machine_versions``
        token_key: Name of the cursor field in both request and response
        **params: Request parameters passed on every call
    """
    token = None
    while True:
        request = dict(params)
        if token:
            request[token_key] = token
        page = fetch(**request)
        yield page

        next_token = page.get(token_key)
        if not next_token:
            return
        if next_token == token:
            logger.debug(f"{token_key} echoed by service, stop paging")
            return
        token = next_token


def collect(fetch: Callable[..., Dict[str, Any]], items_key: str,
            token_key: str = "nextToken", **params: Any) -> List[Any]:
    """Concatenate ``items_key`` from every page."""
    items: List[Any] = []
    for page in paginate(fetch, token_key=token_key, **params):
        items.extend(page.get(items_key, []))
    return items
