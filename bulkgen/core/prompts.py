# -*- coding: utf-8 -*-
import logging
import os
from typing import Iterable, List

from bulkgen.domain.errors import ConfigurationError

log = logging.getLogger("prompts")


def _read_prompt_file(path: str) -> List[str]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return [line.strip() for line in f if line.strip()]
    except OSError as e:
        raise ConfigurationError(f"couldn't read prompt file {path}: {e}")


def build_prompts(entries: Iterable[str], prefix: str = "", suffix: str = "") -> List[str]:
    """
    Expand configured prompt entries into the ordered prompt list.

    An entry naming an existing file contributes one prompt per non-empty line,
    any other entry is a literal prompt. Prefix/suffix are applied to every
    prompt and the result is sorted, so prompt indices stay stable between a run
    and its resume.
    """
    prompts: List[str] = []
    for entry in entries:
        if os.path.isfile(entry):
            lines = _read_prompt_file(entry)
            log.debug("Loaded %d prompt(s) from %s", len(lines), entry)
            prompts.extend(lines)
            continue
        text = entry.strip()
        if text:
            prompts.append(text)
    if not prompts:
        raise ConfigurationError("missing prompt")
    return sorted(f"{prefix}{p}{suffix}" for p in prompts)
