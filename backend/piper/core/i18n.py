from typing import Dict, Any

SUPPORTED_LOCALES = ("en", "zh-TW")
DEFAULT_LOCALE = "en"

TRANSLATIONS: Dict[str, Dict[str, Any]] = {
    "en": {
        "errors": {
            "validation": "Validation failed",
            "authentication": "Authentication failed",
            "authorization": "Access denied",
            "not_found": "Resource not found",
            "conflict": "Resource conflict",
            "rate_limit": "Too many requests, please try again later",
            "database": "Database operation failed",
            "external_service": "External service unavailable",
            "payload_too_large": "Request body too large",
            "internal_error": "Internal server error",
        },
        "suggestions": {
            "validation": [
                "Check your input data and ensure all required fields are provided",
                "Verify data types and formats match the expected schema",
            ],
            "authentication": [
                "Verify your credentials are correct",
                "Check if your session has expired",
                "Try logging out and logging back in",
            ],
            "authorization": [
                "Check if you have the necessary permissions",
                "Contact your administrator if you believe you should have access",
            ],
            "not_found": [
                "Check the resource identifier and URL",
            ],
            "conflict": [
                "The resource already exists or is in a state that does not allow this action",
            ],
            "rate_limit": [
                "Please wait {retry_after} seconds before retrying",
                "Consider reducing the frequency of your requests",
            ],
            "database": [
                "The service is experiencing issues, please try again later",
                "If the problem persists, contact support",
            ],
            "external_service": [
                "An external service is unavailable",
                "Please try again in a few minutes",
            ],
            "default": [
                "An unexpected error occurred",
                "Please try again or contact support if the issue persists",
            ],
        },
        "email": {
            "confirm_subject": "Please confirm your subscription to {title}",
            "confirm_body": "Click the link below to confirm your subscription to {title}:",
            "confirm_action": "Confirm subscription",
            "unsubscribe_footer": "You are receiving this email because you subscribed to {sender}.",
            "unsubscribe_action": "Unsubscribe",
        },
    },
    "zh-TW": {
        "errors": {
            "validation": "資料驗證失敗",
            "authentication": "身份驗證失敗",
            "authorization": "拒絕存取",
            "not_found": "找不到資源",
            "conflict": "資源衝突",
            "rate_limit": "請求過於頻繁，請稍後再試",
            "database": "資料庫操作失敗",
            "external_service": "外部服務暫時無法使用",
            "payload_too_large": "請求內容過大",
            "internal_error": "系統錯誤，請稍後再試",
        },
        "suggestions": {
            "validation": [
                "請檢查輸入資料並確認已填寫所有必填欄位",
                "請確認資料類型與格式正確",
            ],
            "authentication": [
                "請確認帳號密碼正確",
                "請確認登入狀態是否已過期",
                "請嘗試登出後重新登入",
            ],
            "authorization": [
                "請確認您擁有所需權限",
                "如認為應有權限，請聯絡管理員",
            ],
            "not_found": [
                "請確認資源 ID 與網址",
            ],
            "conflict": [
                "資源已存在或目前狀態不允許此操作",
            ],
            "rate_limit": [
                "請等待 {retry_after} 秒後再試",
                "請降低請求頻率",
            ],
            "database": [
                "服務暫時異常，請稍後再試",
                "如問題持續，請聯絡客服",
            ],
            "external_service": [
                "外部服務暫時無法使用",
                "請數分鐘後再試",
            ],
            "default": [
                "發生未預期的錯誤",
                "請重試，如問題持續請聯絡客服",
            ],
        },
        "email": {
            "confirm_subject": "請確認訂閱 {title}",
            "confirm_body": "請點擊以下連結確認訂閱 {title}：",
            "confirm_action": "確認訂閱",
            "unsubscribe_footer": "您收到此郵件是因為您訂閱了 {sender}。",
            "unsubscribe_action": "取消訂閱",
        },
    },
}


def _lookup(key: str, locale: str) -> Any:
    value: Any = TRANSLATIONS.get(locale, TRANSLATIONS[DEFAULT_LOCALE])
    for k in key.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(k)
    return value


def t(key: str, locale: str = DEFAULT_LOCALE, **kwargs) -> str:
    """
    Get translated text for the given key and locale.

    Args:
        key: Dot-notation key (e.g., "errors.not_found")
        locale: Language code (en or zh-TW)
        **kwargs: Format parameters for string interpolation

    Returns:
        Translated text, or the key itself if not found
    """
    value = _lookup(key, locale)
    if value is None and locale != DEFAULT_LOCALE:
        value = _lookup(key, DEFAULT_LOCALE)

    if not isinstance(value, str):
        return key

    if kwargs:
        try:
            return value.format(**kwargs)
        except KeyError:
            return value
    return value


def t_list(key: str, locale: str = DEFAULT_LOCALE, **kwargs) -> list[str]:
    """Get a translated list of strings (e.g. recovery suggestions)."""
    value = _lookup(key, locale)
    if value is None and locale != DEFAULT_LOCALE:
        value = _lookup(key, DEFAULT_LOCALE)
    if not isinstance(value, list):
        return []

    result = []
    for item in value:
        try:
            result.append(item.format(**kwargs) if kwargs else item)
        except KeyError:
            result.append(item)
    return result


def get_locale_from_header(accept_language: str | None) -> str:
    """
    Extract locale from Accept-Language header.

    Args:
        accept_language: Accept-Language header value

    Returns:
        Locale code (en or zh-TW), defaults to en
    """
    if not accept_language:
        return DEFAULT_LOCALE

    # Parse Accept-Language header (e.g., "zh-TW,en;q=0.9")
    for lang in accept_language.split(","):
        locale = lang.split(";")[0].strip()
        if locale in SUPPORTED_LOCALES:
            return locale

    return DEFAULT_LOCALE
