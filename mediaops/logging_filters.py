# --- Global log sanitizer: trims upstream HTML error pages, masks secrets ------
import logging, re

_HTML_SIG_RE = re.compile(r'(?is)<!DOCTYPE html|<html[^>]*>')
_TITLE_RE    = re.compile(r'(?is)<title[^>]*>(.*?)</title>')
_TAG_RE      = re.compile(r'(?is)<[^>]+>')
_SCRIPT_RE   = re.compile(r'(?is)<(script|style)[^>]*>.*?</\1>')
_BEARER_RE   = re.compile(r'(?i)(bearer\s+)[A-Za-z0-9._~+/=-]+')
_SIG_RE      = re.compile(r'(?i)(x-processing-signature["\']?\s*[:=]\s*["\']?)[A-Za-z0-9+/=]+')


def _strip_tags(s: str) -> str:
    s = _SCRIPT_RE.sub('', s)
    s = _TAG_RE.sub(' ', s)
    return re.sub(r'\s+', ' ', s).strip()


def _summarize_html(s: str, limit: int = 200) -> str:
    title = None
    m = _TITLE_RE.search(s)
    if m:
        title = _strip_tags(m.group(1))
    preview = title or _strip_tags(s)[:limit]
    return f"{preview} [HTML {len(s)} chars trimmed]"


def sanitize(msg: str) -> str:
    if len(msg) > 200 and _HTML_SIG_RE.search(msg):
        msg = _summarize_html(msg)
    msg = _BEARER_RE.sub(r'\1<redacted>', msg)
    return _SIG_RE.sub(r'\1<redacted>', msg)


class SanitizeFilter(logging.Filter):
    """Rewrites the rendered message; never drops a record."""
    def filter(self, record: logging.LogRecord) -> bool:
        try:
            msg = record.getMessage()
        except (TypeError, ValueError):
            return True
        clean = sanitize(msg)
        if clean != msg:
            record.msg = clean
            record.args = ()
        return True


def install(names=("", "uvicorn", "uvicorn.error")) -> None:
    for name in names:
        lg = logging.getLogger(name)
        if not any(isinstance(f, SanitizeFilter) for f in lg.filters):
            lg.addFilter(SanitizeFilter())
