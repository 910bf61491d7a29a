# -*- coding: utf-8 -*-
"""
Parsing of Midjourney status messages.

The bot reports every job as free text of the shape::

    **<prompt>** - <@user> (Waiting to start)
    **<prompt>** - <@user> (42%) (fast)
    **<prompt>** - <@user> (relaxed)                    <- finished draft grid
    **<prompt>** - Variations (Strong) by <@user> (fast)
    **<prompt>** - Image #3 <@user>                      <- finished upscale

Only this module knows that shape; the rest of the package consumes ParsedStatus.
"""
import re
from typing import Any, Dict, List, Optional

from bulkgen.domain.models import DRAFT, UPSCALE, VARIATION, ParsedStatus

_STATUS_RE = re.compile(r"^\*\*(?P<prompt>.+?)\*\*\s*-\s*(?P<rest>.*)$", re.DOTALL)
_URL_RE = re.compile(r"<?https?://\S+?>|https?://\S+")
_PERCENT_RE = re.compile(r"\((\d{1,3})%\)")
_IMAGE_NO_RE = re.compile(r"Image\s*#(\d)")
_PARAMS_RE = re.compile(r"\s--\w.*$", re.DOTALL)
_SPACES_RE = re.compile(r"\s+")


def _strip_urls(text: str) -> str:
    return _SPACES_RE.sub(" ", _URL_RE.sub(" ", text)).strip()


def normalize_prompt(text: str) -> str:
    """
    Canonical form used to compare a submitted prompt with the bot's echo:
    no reference URLs, no trailing --params, lowercase, single spaces.
    """
    t = _strip_urls(text or "")
    t = _PARAMS_RE.sub("", " " + t).strip()
    return _SPACES_RE.sub(" ", t).lower().strip(" ,")


def parse_status(content: str) -> Optional[ParsedStatus]:
    """
    Parse one bot message. Returns None when the text is not a job status.
    """
    if not content:
        return None
    m = _STATUS_RE.match(content.strip())
    if not m:
        return None
    prompt = _strip_urls(m.group("prompt"))
    rest = m.group("rest")
    if not prompt:
        return None

    lowered = rest.lower()
    if "(stopped)" in lowered:
        return None

    quadrant = 0
    im = _IMAGE_NO_RE.search(rest)
    if im:
        stage = UPSCALE
        quadrant = int(im.group(1))
    elif "upscaled" in lowered:
        stage = UPSCALE
    elif "variations" in lowered:
        stage = VARIATION
    else:
        stage = DRAFT

    if "waiting to start" in lowered:
        return ParsedStatus(prompt=prompt, stage=stage, progress=0.0, terminal=False, quadrant=quadrant)
    pm = _PERCENT_RE.search(rest)
    if pm:
        pct = min(100, int(pm.group(1)))
        return ParsedStatus(prompt=prompt, stage=stage, progress=pct / 100.0, terminal=False, quadrant=quadrant)
    return ParsedStatus(prompt=prompt, stage=stage, progress=1.0, terminal=True, quadrant=quadrant)


def extract_buttons(components: Optional[List[Dict[str, Any]]]) -> Dict[str, str]:
    """
    Flatten Discord action rows into {label: custom_id}.
    Buttons without a label (emoji-only, e.g. reroll) are keyed by custom_id.
    """
    buttons: Dict[str, str] = {}
    for row in components or []:
        if not isinstance(row, dict):
            continue
        children = row.get("components")
        items = children if isinstance(children, list) else [row]
        for c in items:
            if not isinstance(c, dict):
                continue
            cid = c.get("custom_id")
            if not cid:
                continue
            label = str(c.get("label") or cid)
            buttons.setdefault(label, str(cid))
    return buttons
