import math
import re
from typing import Any, Callable, Dict, List, Optional

from carebot.schemas.domain import Page
from carebot.schemas.session import PaginationCursor

PAGE_NUMBER_RE = re.compile(r"^\d+$")

def resolve_target(command: Optional[str], current_page: int, total_pages: int) -> Optional[int]:
    """Map "next" / "previous" / a bare page number onto a page, or None if it is not navigation."""
    if not command or not isinstance(command, str):
        return None
    nav = command.strip().lower()

    if nav == "next":
        return current_page + 1 if current_page < total_pages else None
    if nav == "previous":
        return current_page - 1 if current_page > 1 else None

    if PAGE_NUMBER_RE.match(nav):
        n = int(nav)
        if 1 <= n <= total_pages:
            return n
    return None

def render(
    items: List[Dict[str, Any]],
    page: int,
    total_pages: int,
    title: str = "",
    formatter: Callable[[Dict[str, Any]], str] = None,
) -> str:
    formatter = formatter or (lambda item: str(item.get("name", item)))
    message = f"{title} (Page {page}/{total_pages})\n\n"
    for index, item in enumerate(items, start=1):
        message += f"{index}. {formatter(item) or ''}\n\n"

    message += "📍 *Navigation:*\n"
    if page > 1:
        message += f'• Type "Previous" to go to page {page - 1}\n'
    if page < total_pages:
        message += f'• Type "Next" to go to page {page + 1}\n'
    if total_pages > 1:
        message += f"• Type a page number (1-{total_pages}) to jump to that page\n"
    return message

def total_pages_for(count: int, page_size: int) -> int:
    if page_size <= 0:
        return 1
    return max(1, math.ceil(count / page_size))

def build_cursor(page: Page, filters: Dict[str, Any] = None) -> PaginationCursor:
    total = max(1, page.total_pages)
    return PaginationCursor(
        current_page=min(max(1, page.page), total),
        total_pages=total,
        page_size=page.page_size,
        items=list(page.items),
        filters=dict(filters or {}),
    )
