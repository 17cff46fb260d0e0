"""
Authenticated browsing and transactions: paginated lists, cart, orders,
payments, appointment booking and prescription attachments.
"""
import logging
import re
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from carebot.exceptions import RejectedError
from carebot.schemas.session import ListKind, PaginationCursor, PendingAttachment, TokenSource
from carebot.services import messages, pagination
from carebot.services.flow_context import FlowContext
from carebot.services.retry import RetryPolicy, call_with_retry, execute_with_retry
from carebot.utils.timeutils import utcnow
from carebot.utils.validators import is_valid_order_id, parse_order_id, ORDER_CAPTION_RE

logger = logging.getLogger(__name__)

QUICK_ATTACH_RE = re.compile(r"^(rx|attach|link)\s+#?(\S+)$", re.IGNORECASE)
ALLOWED_MEDIA_TYPES = {"image/jpeg", "image/png", "image/webp", "image/gif", "application/pdf"}
ONLINE_PAYMENT_PROVIDERS = ("flutterwave", "paystack")


def _price(item: Dict[str, Any]) -> str:
    price = item.get("price")
    return f" - ₦{price}" if price not in (None, "") else ""


def format_product(item: Dict[str, Any]) -> str:
    return f"{item.get('name', 'Unnamed')}{_price(item)}"


def format_doctor(item: Dict[str, Any]) -> str:
    line = f"Dr. {item.get('name', 'Unknown')}"
    if item.get("specialty"):
        line += f" ({item['specialty']})"
    if item.get("location"):
        line += f" - {item['location']}"
    return line


def format_test(item: Dict[str, Any]) -> str:
    return f"{item.get('name', 'Unnamed test')}{_price(item)}"


def format_appointment(item: Dict[str, Any]) -> str:
    doctor = item.get("doctorName") or item.get("doctor") or "Doctor"
    when = item.get("scheduledAt") or item.get("date") or "unscheduled"
    status = item.get("status")
    return f"{doctor} - {when}" + (f" ({status})" if status else "")


FORMATTERS: Dict[ListKind, Callable[[Dict[str, Any]], str]] = {
    ListKind.PRODUCTS: format_product,
    ListKind.HEALTHCARE_PRODUCTS: format_product,
    ListKind.DOCTORS: format_doctor,
    ListKind.DIAGNOSTIC_TESTS: format_test,
    ListKind.APPOINTMENTS: format_appointment,
}

LIST_HINTS = {
    ListKind.PRODUCTS: "Add to cart: add <item number> <quantity>",
    ListKind.HEALTHCARE_PRODUCTS: "Add to cart: add <item number> <quantity>",
    ListKind.DOCTORS: "Book: book <doctor number> <YYYY-MM-DD> <HH:MM>",
}


class CatalogFlow:
    def __init__(self, domain, tokens, policy: RetryPolicy = None, page_size: int = 5, default_location: str = "Lagos"):
        self.domain = domain
        self.tokens = tokens
        self.policy = policy
        self.page_size = page_size
        self.default_location = default_location

    async def external_token(self, ctx: FlowContext) -> Optional[str]:
        """The domain API token, refreshed through the retry executor when close to expiry."""
        track = ctx.data.external_token
        if track is None:
            return None
        current = track.value
        return await self.tokens.get_or_refresh(
            ctx.data,
            TokenSource.EXTERNAL,
            lambda: execute_with_retry(
                lambda: self.domain.refresh_token(current), self.policy, label="refresh_token"
            ),
        )

    # --- paginated lists ---

    async def open_list(self, ctx: FlowContext, kind: ListKind, filters: Dict[str, Any]):
        token = await self.external_token(ctx)
        filters = {k: v for k, v in filters.items() if v}
        page = await call_with_retry(
            lambda: self.domain.list_page(kind, filters, 1, self.page_size, token),
            self.policy,
            label=f"list_{kind.value}",
        )
        if not page.items:
            # The previous search for this kind no longer applies
            ctx.data.drop_cursor(kind)
            ctx.reply(messages.with_menu(messages.LIST_EMPTY[kind.value], True))
            return
        cursor = pagination.build_cursor(page, filters)
        cursor.page_size = self.page_size
        ctx.data.set_cursor(kind, cursor)
        ctx.reply(self._render(kind, cursor))

    async def navigate(self, ctx: FlowContext, target: int):
        kind = ctx.data.active_list
        cursor = ctx.data.active_cursor()
        token = await self.external_token(ctx)
        page = await call_with_retry(
            lambda: self.domain.list_page(kind, cursor.filters, target, cursor.page_size, token),
            self.policy,
            label=f"list_{kind.value}",
        )
        updated = pagination.build_cursor(page, cursor.filters)
        updated.page_size = cursor.page_size
        ctx.data.set_cursor(kind, updated)
        ctx.reply(self._render(kind, updated))

    def _render(self, kind: ListKind, cursor: PaginationCursor) -> str:
        text = pagination.render(
            cursor.items,
            cursor.current_page,
            cursor.total_pages,
            title=messages.LIST_TITLES[kind.value],
            formatter=FORMATTERS[kind],
        )
        hint = LIST_HINTS.get(kind)
        return f"{text}\n{hint}" if hint else text

    async def search_products(self, ctx: FlowContext, params: Dict[str, str]):
        await self.open_list(ctx, ListKind.PRODUCTS, {"search": params.get("product")})

    async def healthcare_products(self, ctx: FlowContext, params: Dict[str, str]):
        await self.open_list(ctx, ListKind.HEALTHCARE_PRODUCTS, {"category": params.get("category")})

    async def diagnostic_tests(self, ctx: FlowContext, params: Dict[str, str]):
        await self.open_list(ctx, ListKind.DIAGNOSTIC_TESTS, {"type": params.get("testType")})

    async def search_doctors(self, ctx: FlowContext, params: Dict[str, str]):
        filters = {
            "specialty": params.get("specialty"),
            "location": params.get("location") or self.default_location,
        }
        await self.open_list(ctx, ListKind.DOCTORS, filters)

    async def list_appointments(self, ctx: FlowContext, params: Dict[str, str]):
        await self.open_list(ctx, ListKind.APPOINTMENTS, {"userId": ctx.data.user_id})

    # --- cart and orders ---

    async def add_to_cart(self, ctx: FlowContext, params: Dict[str, str]):
        item = self._pick(ctx, params.get("productIndex"), (ListKind.PRODUCTS, ListKind.HEALTHCARE_PRODUCTS))
        if item is None:
            ctx.reply("Search for a product first, then send: add <item number> <quantity>")
            return
        try:
            quantity = int(params.get("quantity") or 1)
        except ValueError:
            quantity = 0
        if quantity < 1:
            ctx.reply("Quantity must be a whole number of at least 1.")
            return

        token = await self.external_token(ctx)
        await call_with_retry(
            lambda: self.domain.add_to_cart(token, ctx.data.user_id, item.get("id"), quantity),
            self.policy,
            label="add_to_cart",
        )
        ctx.data.last_cart_item = {"id": item.get("id"), "name": item.get("name"), "quantity": quantity}
        ctx.reply(
            f"🛒 Added {quantity} x {item.get('name', 'item')} to your cart.\n"
            "Checkout: order <delivery address> <flutterwave|paystack|cash>"
        )

    async def place_order(self, ctx: FlowContext, params: Dict[str, str]):
        address = params.get("address")
        method = (params.get("paymentMethod") or "").lower()
        if not address or not method:
            ctx.reply("To place an order send: order <delivery address> <flutterwave|paystack|cash>")
            return
        if method == "cash on delivery":
            method = "cash"

        token = await self.external_token(ctx)
        order = await call_with_retry(
            lambda: self.domain.place_order(token, ctx.data.user_id, address, method),
            self.policy,
            label="place_order",
        )
        order_id = str(order.get("id") or order.get("orderId") or "")
        ctx.data.last_order_id = order_id or None
        ctx.data.last_cart_item = None

        text = f"✅ Order #{order_id} placed. Delivery to: {address}"
        if method in ONLINE_PAYMENT_PROVIDERS:
            link = await self._payment_link(token, order_id, method)
            text += f"\n💳 Pay with {method.title()}: {link}"
        else:
            text += "\n💵 Payment: cash on delivery."
        ctx.reply(messages.with_menu(text, True))

    async def track_order(self, ctx: FlowContext, params: Dict[str, str]):
        order_id = parse_order_id(params.get("orderId")) or ctx.data.last_order_id
        if not order_id or not is_valid_order_id(order_id):
            ctx.reply("Which order? Send: track <order id>")
            return
        token = await self.external_token(ctx)
        order = await call_with_retry(
            lambda: self.domain.get_order(token, order_id), self.policy, label="get_order"
        )
        status = order.get("status", "unknown")
        lines = [f"📦 Order #{order_id}", f"Status: {status}"]
        if order.get("total") is not None:
            lines.append(f"Total: ₦{order['total']}")
        ctx.reply("\n".join(lines))

    async def payment(self, ctx: FlowContext, params: Dict[str, str]):
        order_id = params.get("orderId") or ctx.data.last_order_id
        provider = (params.get("provider") or "").lower()
        if not order_id or provider not in ONLINE_PAYMENT_PROVIDERS:
            ctx.reply("To pay send: pay <order id> <flutterwave|paystack>")
            return
        token = await self.external_token(ctx)
        link = await self._payment_link(token, order_id, provider)
        ctx.reply(f"💳 Pay for order #{order_id} with {provider.title()}: {link}")

    async def _payment_link(self, token: Optional[str], order_id: str, provider: str) -> str:
        result = await call_with_retry(
            lambda: self.domain.create_payment_link(token, order_id, provider),
            self.policy,
            label="create_payment_link",
        )
        link = result.get("link") or result.get("url") or result.get("paymentLink")
        if not link:
            raise RejectedError("We couldn't create a payment link for that order.")
        return link

    # --- appointments ---

    async def book_appointment(self, ctx: FlowContext, params: Dict[str, str]):
        doctor = self._pick(ctx, params.get("doctorIndex"), (ListKind.DOCTORS,))
        if doctor is None or not params.get("date") or not params.get("time"):
            ctx.reply(
                "Find a doctor first (e.g. \"doctors cardiologist in Lagos\"), then send:\n"
                "book <doctor number> <YYYY-MM-DD> <HH:MM>"
            )
            return
        try:
            scheduled = datetime.strptime(f"{params['date']} {params['time']}", "%Y-%m-%d %H:%M")
        except ValueError:
            ctx.reply("Please use the date format YYYY-MM-DD and time HH:MM.")
            return
        if scheduled <= utcnow():
            ctx.reply("Please pick a date and time in the future.")
            return

        token = await self.external_token(ctx)
        appointment = await call_with_retry(
            lambda: self.domain.book_appointment(token, ctx.data.user_id, doctor.get("id"), scheduled.isoformat()),
            self.policy,
            label="book_appointment",
        )
        appointment_id = str(appointment.get("id") or "")
        ctx.data.last_appointment_id = appointment_id or None
        ctx.reply(messages.with_menu(
            f"📅 Appointment booked with {format_doctor(doctor)} on {scheduled:%Y-%m-%d at %H:%M}.", True
        ))

    # --- prescriptions ---

    async def receive_media(self, ctx: FlowContext, url: str, content_type: Optional[str], caption: str):
        if (content_type or "").lower() not in ALLOWED_MEDIA_TYPES:
            ctx.reply("Please send your prescription as a JPEG, PNG, WEBP or GIF image, or a PDF.")
            return

        match = ORDER_CAPTION_RE.search(caption or "")
        if match:
            await self._attach(ctx, match.group(1), url)
            return

        ctx.data.pending_attachment = PendingAttachment(url=url, content_type=content_type, received_at=utcnow())
        ctx.reply("📎 Prescription received. Which order is it for? Reply: rx <order id>")

    async def quick_attach(self, ctx: FlowContext, order_ref: str):
        pending = ctx.data.pending_attachment
        order_id = parse_order_id(order_ref)
        if not order_id or not is_valid_order_id(order_id):
            ctx.reply("That order id doesn't look right. Reply: rx <order id>")
            return
        await self._attach(ctx, order_id, pending.url)
        ctx.data.pending_attachment = None

    async def _attach(self, ctx: FlowContext, order_id: str, url: str):
        token = await self.external_token(ctx)
        await call_with_retry(
            lambda: self.domain.attach_prescription(token, order_id, url),
            self.policy,
            label="attach_prescription",
        )
        ctx.reply(f"✅ Prescription attached to order #{order_id}.")

    def _pick(self, ctx: FlowContext, index: Optional[str], kinds) -> Optional[Dict[str, Any]]:
        """Item n (1-based) of the current page of the most relevant open list."""
        if not index or not str(index).isdigit():
            return None
        kind = ctx.data.active_list if ctx.data.active_list in kinds else next(
            (k for k in kinds if k in ctx.data.cursors), None
        )
        if kind is None:
            return None
        items = ctx.data.cursors[kind].items
        n = int(index)
        if 1 <= n <= len(items):
            return items[n - 1]
        return None
