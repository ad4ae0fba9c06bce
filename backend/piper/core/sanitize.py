"""输入清洗 - 基于 bleach 的 HTML 白名单与纯文本清洗"""

import html
import re
from typing import Iterable, List, Optional

import bleach

# 邮件安全标签
SAFE_TAGS = [
    "p", "br", "strong", "em", "b", "i", "u", "s", "sub", "sup",
    "h1", "h2", "h3", "h4", "h5", "h6",
    "ul", "ol", "li", "dl", "dt", "dd",
    "a", "img", "figure", "figcaption",
    "table", "thead", "tbody", "tfoot", "tr", "td", "th", "caption",
    "div", "span", "section", "article", "header", "footer",
    "hr", "blockquote", "pre", "code",
]

SAFE_ATTRIBUTES = {
    "*": ["class", "title", "dir", "lang"],
    "a": ["href", "title", "rel", "target"],
    "img": ["src", "alt", "width", "height", "title"],
    "table": ["border", "cellpadding", "cellspacing", "width", "align"],
    "td": ["colspan", "rowspan", "width", "align", "valign"],
    "th": ["colspan", "rowspan", "width", "align", "valign"],
}

SAFE_PROTOCOLS = ["http", "https", "mailto"]

# bleach 的 strip 只去标签不去内容，script/style 整块先移除
_SCRIPT_BLOCK = re.compile(r"<(script|style|iframe|object)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_JS_PROTOCOL = re.compile(r"(javascript|vbscript)\s*:", re.IGNORECASE)
_EVENT_HANDLER = re.compile(r"\bon\w+\s*=", re.IGNORECASE)
_ANY_TAG = re.compile(r"<[^>]*>")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]+")

_html_cleaner = bleach.Cleaner(
    tags=SAFE_TAGS,
    attributes=SAFE_ATTRIBUTES,
    protocols=SAFE_PROTOCOLS,
    strip=True,
    strip_comments=True,
)


def sanitize_html(value: Optional[str]) -> Optional[str]:
    """清洗富文本：保留安全 HTML 子集"""
    if value is None:
        return None
    cleaned = _SCRIPT_BLOCK.sub("", value)
    return _html_cleaner.clean(cleaned).strip()


def sanitize_text(value: Optional[str]) -> Optional[str]:
    """
    清洗纯文本字段（简介等可多行的文本）

    移除所有标签、javascript: 协议和事件处理属性
    """
    if value is None:
        return None
    cleaned = _SCRIPT_BLOCK.sub("", value)
    cleaned = bleach.clean(cleaned, tags=[], attributes={}, strip=True, strip_comments=True)
    cleaned = _ANY_TAG.sub("", html.unescape(cleaned))
    cleaned = _JS_PROTOCOL.sub("", cleaned)
    cleaned = _EVENT_HANDLER.sub("", cleaned)
    return cleaned.strip()


def sanitize_line(value: Optional[str]) -> Optional[str]:
    """清洗单行字段（标题、主题、名称），换行与控制字符折叠为空格"""
    cleaned = sanitize_text(value)
    if cleaned is None:
        return None
    return _CONTROL_CHARS.sub(" ", cleaned).strip()


def sanitize_tags(values: Optional[Iterable[str]]) -> List[str]:
    """清洗标签列表：去空、去重、统一小写"""
    result: List[str] = []
    for value in values or []:
        tag = sanitize_line(value)
        if tag:
            tag = tag.lower()[:50]
            if tag not in result:
                result.append(tag)
    return result
