"""Customer-facing messages for error codes, Arabic first."""

from typing import Optional

MESSAGES = {
    "ORDER_ALREADY_CAPTURED": {
        "ar": "هذا الطلب تم تأكيده مسبقاً",
        "en": "This order has already been confirmed",
    },
    "ORDER_EXPIRED": {
        "ar": "انتهت صلاحية الطلب، يرجى المحاولة مرة أخرى",
        "en": "The order has expired, please try again",
    },
    "ORDER_NOT_APPROVED": {
        "ar": "لم يتم الموافقة على الطلب من PayPal",
        "en": "The order was not approved on PayPal",
    },
    "INSTRUMENT_DECLINED": {
        "ar": "تم رفض وسيلة الدفع",
        "en": "The payment method was declined",
    },
    "PAYER_ACTION_REQUIRED": {
        "ar": "يتطلب إجراء من المشتري",
        "en": "Action is required from the buyer",
    },
    "COMPLIANCE_VIOLATION": {
        "ar": "مشكلة في حساب PayPal - يرجى التواصل مع الدعم الفني",
        "en": "There is a problem with the PayPal account, please contact support",
    },
    "CAPTURE_DENIED": {
        "ar": "تم رفض عملية الدفع",
        "en": "The payment was denied",
    },
    "CAPTURE_FAILED": {
        "ar": "فشل في تأكيد الدفع",
        "en": "Payment confirmation failed",
    },
    "CAPTURE_PENDING": {
        "ar": "الدفع قيد المراجعة",
        "en": "The payment is pending review",
    },
    "LOCAL_ORDER_NOT_FOUND": {
        "ar": "الطلب المحلي غير موجود",
        "en": "Local order not found",
    },
    "AUTH_FAILED": {
        "ar": "فشل المصادقة مع PayPal",
        "en": "PayPal authentication failed",
    },
    "PAYPAL_DISABLED": {
        "ar": "PayPal غير مفعل",
        "en": "PayPal is not available",
    },
    "MISSING_CREDENTIALS": {
        "ar": "بيانات PayPal غير مكتملة",
        "en": "PayPal credentials are not configured",
    },
    "SERVER_ERROR": {
        "ar": "حدث خطأ في الخادم",
        "en": "An internal server error occurred",
    },
}


def localize(code: str, locale: str = "ar", default: Optional[str] = None) -> str:
    entry = MESSAGES.get(code)
    if entry is None:
        return default or MESSAGES["CAPTURE_FAILED"].get(locale, MESSAGES["CAPTURE_FAILED"]["en"])
    return entry.get(locale) or entry["en"]


def locale_from_header(accept_language: Optional[str], default: str = "ar") -> str:
    """Picks 'ar' or 'en' from an Accept-Language header."""
    if not accept_language:
        return default
    for part in accept_language.split(","):
        tag = part.split(";")[0].strip().lower()
        if tag.startswith("en"):
            return "en"
        if tag.startswith("ar"):
            return "ar"
    return default
