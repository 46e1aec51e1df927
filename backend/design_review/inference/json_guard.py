import json
import re
from typing import Any, Optional

_OBJECT_RE = re.compile(r'\{.*\}', re.S)
_FENCE_RE = re.compile(r'^```(?:json)?\s*|\s*```$', re.I)


def extract_json(text: str) -> Optional[str]:
    m = _OBJECT_RE.search(text or "")
    return m.group(0).strip() if m else None


def try_parse_json(text: str) -> Optional[Any]:
    try:
        return json.loads(_FENCE_RE.sub("", (text or "").strip()))
    except ValueError:
        return None
