"""Page-number pagination for list endpoints."""
from typing import Any, Callable, Dict, Mapping, Optional

from sqlalchemy.orm import Session
from sqlalchemy.sql import Select
from starlette.datastructures import URL

from catalog.core.config import settings
from catalog.core.exceptions import NotFound
from catalog.services.queries import count

PAGE_QUERY_PARAM = "page"
PAGE_SIZE_QUERY_PARAM = "page_size"
LAST_PAGE_STRINGS = ("last",)


def _positive_int(raw: Optional[str], cutoff: Optional[int] = None) -> int:
    value = int(raw)
    if value <= 0:
        raise ValueError(raw)
    if cutoff is not None:
        return min(value, cutoff)
    return value


class PageNumberPagination:
    """Slice a select into pages and build ``next``/``previous`` links.

    ``page_size`` may be overridden per request up to ``max_page_size``.
    """

    def __init__(self, page_size: Optional[int] = None, max_page_size: Optional[int] = None):
        self.page_size = page_size or settings.page_size
        self.max_page_size = max_page_size or settings.max_page_size

    def get_page_size(self, params: Mapping[str, str]) -> int:
        raw = params.get(PAGE_SIZE_QUERY_PARAM)
        if raw:
            try:
                return _positive_int(raw, cutoff=self.max_page_size)
            except (TypeError, ValueError):
                pass
        return self.page_size

    def paginate(
        self,
        session: Session,
        query: Select,
        url: URL,
        params: Mapping[str, str],
        serialize: Callable[[Any], Any],
    ) -> Dict[str, Any]:
        """Run the query for the requested page.

        Returns:
            ``{"count", "next", "previous", "results"}``; ``count`` is the
            number of rows matching the query, not the table size

        Raises:
            NotFound: If the page number is not a positive integer or is
                past the last page
        """
        page_size = self.get_page_size(params)

        raw_page = params.get(PAGE_QUERY_PARAM) or "1"
        page_number = None
        if raw_page not in LAST_PAGE_STRINGS:
            try:
                page_number = _positive_int(raw_page)
            except (TypeError, ValueError):
                raise NotFound("Invalid page.") from None

        total = count(session, query)
        num_pages = max(1, -(-total // page_size))
        if page_number is None:
            page_number = num_pages
        if page_number > num_pages:
            raise NotFound("Invalid page.")

        offset = (page_number - 1) * page_size
        rows = session.execute(query.offset(offset).limit(page_size)).scalars().unique().all()

        return {
            "count": total,
            "next": self._page_link(url, page_number + 1) if page_number < num_pages else None,
            "previous": self._page_link(url, page_number - 1) if page_number > 1 else None,
            "results": [serialize(row) for row in rows],
        }

    def _page_link(self, url: URL, page_number: int) -> str:
        if page_number == 1:
            return str(url.remove_query_params(PAGE_QUERY_PARAM))
        return str(url.include_query_params(**{PAGE_QUERY_PARAM: page_number}))
