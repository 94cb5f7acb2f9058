from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class StepTrace:
    """
    Ordered diagnostic steps for one invocation.

    Each request builds its own trace; it is logged as it grows and returned
    with the response (success or failure), never shared between requests.
    """

    tag: str
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger(__name__))
    steps: List[Dict[str, Any]] = field(default_factory=list)

    def step(self, name: str, details: Optional[Dict[str, Any]] = None) -> None:
        entry: Dict[str, Any] = {"step": name}
        if details:
            entry["details"] = details
        self.steps.append(entry)
        if details:
            self.logger.info("[%s] %s - %s", self.tag, name, json.dumps(details, default=str))
        else:
            self.logger.info("[%s] %s", self.tag, name)

    def as_list(self) -> List[Dict[str, Any]]:
        return list(self.steps)
