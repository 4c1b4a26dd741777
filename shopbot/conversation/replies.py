"""Canned customer-facing texts.

Workspace overrides (``WorkspaceSettings.fast_lane_messages`` and friends)
always win; these are the built-in fallbacks.
"""

from __future__ import annotations

import re
from typing import Iterable

from shopbot.conversation.state import CartItem, PendingImage, calculate_cart_total

_EMOJI_RE = re.compile("[🎉😊📱📍✅🚚💳🔄📦💰📏🎨❌⚠😔🛍👋🚀✨🏢📞⏰🙏🔢📸💬🛒👤💵📊🏷📝🔘✍🤔👌📋\ufe0f]")

SEPARATOR = "━━━━━━━━━━━━━━━━━━━━"
NAME_EXAMPLE = "(Example: Zayed Bin Hamid)"
PHONE_EXAMPLE = "Example: 01712345678"

ASK_NAME = f"আপনার সম্পূর্ণ নামটি বলবেন?\n{NAME_EXAMPLE}"
ASK_NAME_INLINE = f"আপনার সম্পূর্ণ নামটি বলবেন? {NAME_EXAMPLE}"
ASK_PHONE = "এখন আপনার ফোন নম্বর দিন। 📱"
ASK_ADDRESS = "আপনার ডেলিভারি ঠিকানাটি দিন।"
ASK_PRODUCT_CONFIRM = "এই product চান? (YES/NO)"
ASK_ORDER_CONFIRM = "অর্ডার কনফার্ম করতে YES লিখুন, বাতিল করতে NO। ✅"
ASK_PAYMENT_DIGITS = "Payment করার পর transaction ID এর শেষের ২ ডিজিট পাঠান। 🔢"
ALREADY_ORDERING = "আপনি ইতিমধ্যে অর্ডার করছেন! আপনার সম্পূর্ণ নামটি বলবেন?"
INVALID_PHONE = f"⚠️ দুঃখিত! সঠিক phone number দিন।\n\n{PHONE_EXAMPLE}"
DETAILS_ON_CARD = "আপনি product এর details product card এ দেখতে পাবেন। 😊"

DEFAULT_GREETING = 'স্বাগতম! আমাদের দোকানে আপনাকে স্বাগতম!\n\nশুরু করতে product এর ছবি পাঠান, অথবা "help" লিখুন।'
DEFAULT_OUT_OF_STOCK = (
    'দুঃখিত! 😔 "{productName}" এখন স্টকে নেই।\n\n'
    "আপনি চাইলে অন্য পণ্যের নাম লিখুন বা স্ক্রিনশট পাঠান। আমরা সাহায্য করতে পারবো! 🛍️"
)
DEFAULT_QUICK_FORM_PROMPT = (
    "দারুণ! অর্ডারটি সম্পন্ন করতে, অনুগ্রহ করে নিচের ফর্ম্যাট অনুযায়ী আপনার তথ্য দিন:\n\nনাম:\nফোন:\nসম্পূর্ণ ঠিকানা:"
)
MULTI_PRODUCT_QUICK_FORM_PROMPT = "দারুণ! অর্ডারটি সম্পন্ন করতে আপনার তথ্য দিন:\n\nনাম:\nফোন:\nসম্পূর্ণ ঠিকানা:"
DEFAULT_QUICK_FORM_ERROR = "দুঃখিত, আমি আপনার তথ্যটি সঠিকভাবে বুঝতে পারিনি। 😔"

URGENCY_RESPONSE = (
    "🚀 চিন্তার কারণ নেই! আমরা দ্রুত ডেলিভারি নিশ্চিত করি।\n"
    "ঢাকার মধ্যে ২-৩ দিন এবং বাইরে ৩-৫ দিনের মধ্যে পেয়ে যাবেন।"
)
OBJECTION_RESPONSE = (
    "✨ আমাদের প্রতিটি পণ্য ১০০% অথেনটিক এবং হাই কোয়ালিটি।\n"
    "আপনি নিশ্চিন্তে অর্ডার করতে পারেন, পছন্দ না হলে রিটার্ন করার সুযোগ তো থাকছেই!"
)
SELLER_INFO = (
    "🏢 আমাদের অফিস মিরপুর, ঢাকা।\n"
    "📞 প্রয়োজনে কল করুন: 01915969330\n"
    "⏰ আমরা প্রতিদিন সকাল ১০টা থেকে রাত ১০টা পর্যন্ত খোলা আছি।"
)
RETURN_POLICY = "🔄 Return Policy:\nপণ্য হাতে পাওয়ার পর ২ দিনের মধ্যে ফেরত দিতে পারবেন।"

IMAGE_NOT_RECOGNIZED = (
    "Sorry, I couldn't recognize this product. 😔\n\n"
    "Try:\n📸 Taking a clearer photo\n💬 Telling me the product name\n\n"
    'Example: "Red Saree" or "Polo T-shirt"'
)
IMAGE_PROCESSING_ERROR = "দুঃখিত! ছবি প্রসেস করতে সমস্যা হয়েছে। 😔 আবার চেষ্টা করুন।"
TECHNICAL_ERROR = "দুঃখিত, আমাদের একটা technical সমস্যা হয়েছে। একটু পরে আবার try করুন। 🙏"
NO_INPUT = "👋 Hi! Send me a product image or tell me what you're looking for!"
SEARCH_NO_RESULTS = 'দুঃখিত! "{query}" এর সাথে মিলে এমন কোনো product পাইনি। 😔\n\nProduct এর ছবি পাঠান অথবা অন্য নাম লিখুন।'


def taka(amount: float | int | None) -> str:
    if amount is None:
        return "0"
    value = float(amount)
    if value.is_integer():
        return str(int(value))
    return f"{value:.2f}"


def strip_emojis(text: str) -> str:
    stripped = _EMOJI_RE.sub("", text)
    return "\n".join(line.rstrip() for line in stripped.split("\n")).replace("  ", " ")


def finish(text: str, use_emojis: bool) -> str:
    return text if use_emojis else strip_emojis(text)


def capitalize_words(text: str) -> str:
    return " ".join(word[:1].upper() + word[1:] for word in text.lower().split(" "))


def product_details(item: CartItem | None) -> str | None:
    if item is None:
        return None
    parts = [f"📦 **{item.product_name}**", f"💰 Price: ৳{taka(item.product_price)}"]
    if item.description:
        parts.append(f"\n{item.description}")
    if item.stock_quantity is not None:
        if item.stock_quantity > 0:
            parts.append(f"\n✅ In Stock ({item.stock_quantity} available)")
        else:
            parts.append("\n❌ Out of Stock")
    if item.sizes:
        parts.append(f"\n📏 Sizes: {', '.join(item.sizes)}")
    if item.colors:
        parts.append(f"\n🎨 Colors: {', '.join(item.colors)}")
    return "\n".join(parts)


def product_card(
    *,
    name: str,
    price: float,
    description: str | None = None,
    stock: int | None = None,
    category: str | None = None,
    colors: Iterable[str] = (),
    sizes: Iterable[str] = (),
) -> str:
    colors = list(colors)
    sizes = list(sizes)
    lines = [f"📦 {name}", ""]
    if description:
        lines += ["📝 Description:", description, ""]
    lines.append(f"💰 Price: ৳{taka(price)}")
    if stock is not None:
        lines.append(f"📊 Stock: {stock} units available")
    if category:
        lines.append(f"🏷️ Category: {category}")
    if colors:
        lines.append(f"🎨 Available Colors: {', '.join(colors)}")
    if sizes:
        lines.append(f"📏 Available Sizes: {', '.join(sizes)}")
    if stock is not None:
        lines += ["", f"✅ Stock: {'In Stock' if stock > 0 else 'Out of Stock'}"]
    lines += [
        "",
        SEPARATOR,
        "অর্ডার করতে:",
        "🔘 'Order Now' বাটনে ক্লিক করুন",
        "অথবা",
        '✍️ টাইপ করুন: "order korbo" বা "nibo"',
    ]
    return "\n".join(lines)


def order_summary(
    *,
    customer_name: str,
    cart: list[CartItem],
    address: str,
    delivery_charge: float,
    total_amount: float,
    phone: str | None = None,
) -> str:
    items = []
    for index, item in enumerate(cart, start=1):
        line = f"{index}. {item.product_name}"
        if item.selected_size:
            line += f"\n   📏 Size: {item.selected_size}"
        if item.selected_color:
            line += f"\n   🎨 Color: {item.selected_color}"
        line += f"\n   ৳{taka(item.product_price)} × {item.quantity} = ৳{taka(item.line_total)}"
        items.append(line)

    phone_line = f"📱 Phone: {phone}\n" if phone else ""
    return (
        f"📦 Order Summary\n{SEPARATOR}\n\n"
        f"👤 Name: {customer_name}\n"
        f"{phone_line}"
        f"📍 Address: {address}\n\n"
        f"🛍️ Product:\n" + "\n\n".join(items) + "\n\n"
        f"💰 Pricing:\n"
        f"• Subtotal: ৳{taka(calculate_cart_total(cart))}\n"
        f"• Delivery: ৳{taka(delivery_charge)}\n"
        f"• Total: ৳{taka(total_amount)}\n\n"
        f"{SEPARATOR}\n"
        "Confirm this order? (YES/NO) ✅"
    )


def payment_instructions(total_amount: float | None, payment_number: str = "{{PAYMENT_DETAILS}}") -> str:
    return (
        "✅ অর্ডার confirm হয়েছে!\n\n"
        "💰 Payment options:\n"
        f"৳{taka(total_amount)} টাকা পাঠান:\n"
        f"{payment_number}\n\n"
        "Payment করার পর শেষের ২ ডিজিট (last 2 digits) পাঠান। 🔢\n\n"
        "Example: যদি transaction ID হয় BKC123456**78**, তাহলে পাঠান: 78"
    )


def invalid_payment_digits() -> str:
    return "⚠️ দুঃখিত! শুধু ২টা digit দিতে হবে।\n\nExample: 78 বা 45\n\nআবার চেষ্টা করুন। 🔢"


def payment_review(name: str | None, digits: str) -> str:
    return (
        f"ধন্যবাদ {name or 'Customer'}! 🙏\n\n"
        f"আপনার payment digits ({digits}) পেয়েছি। ✅\n\n"
        "আমরা এখন payment verify করবো। সফল হলে ৩ দিনের মধ্যে আপনার order deliver করা হবে। 📦\n\n"
        "আমাদের সাথে কেনাকাটার জন্য ধন্যবাদ! 🎉"
    )


def help_text() -> str:
    return (
        "আমি আপনাকে সাহায্য করতে পারি! 😊\n\n"
        "কিভাবে অর্ডার করবেন:\n"
        "1️⃣ Product এর ছবি পাঠান\n"
        "2️⃣ আমি product খুঁজে দেব\n"
        "3️⃣ Confirm করুন\n"
        "4️⃣ নাম, ফোন, ঠিকানা দিন\n"
        "5️⃣ Order confirmed! 🎉\n\n"
        "এখনই শুরু করতে product এর ছবি পাঠান! 📸"
    )


def image_match_found(name: str, price: float) -> str:
    return f"✅ Found: {name}\n💰 Price: ৳{taka(price)}\n\nWould you like to order this? (YES/NO)"


def search_results(products: list[tuple[str, float]]) -> str:
    lines = [f"{index}. {name} - ৳{taka(price)}" for index, (name, price) in enumerate(products, start=1)]
    return "🔍 এই products গুলো পেয়েছি:\n\n" + "\n".join(lines) + "\n\nকোনটা চান? Product এর নাম লিখুন অথবা ছবি পাঠান। 📸"


def selection_summary(cart: list[CartItem]) -> str:
    lines = [f"{index}. {item.product_name} - ৳{taka(item.product_price)}" for index, item in enumerate(cart, start=1)]
    total = sum(item.product_price for item in cart)
    return f"✅ {len(cart)}টা product নির্বাচিত হয়েছে:\n\n" + "\n".join(lines) + f"\n\n💰 মোট: ৳{taka(total)}\n\n"


def pending_list(recognized: list[PendingImage], header: str) -> str:
    lines = [
        f"{index}️⃣ {image.recognition_result.product_name} - ৳{taka(image.recognition_result.product_price)}"
        for index, image in enumerate(recognized, start=1)
    ]
    return (
        header
        + "\n".join(lines)
        + '\n\nকোনগুলো অর্ডার করবেন?\n• "সবগুলো" - সব product\n• "1 ar 3" - নির্দিষ্ট item\n• "না" - বাতিল করতে'
    )
