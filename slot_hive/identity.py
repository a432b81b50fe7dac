"""
Slot Hive - Identity Rotation Interface
The Scout calls rotate() on HTTP 429. Implementations must fully invalidate the
previous network identity (cookies, cache, egress) before reporting success.
"""

import abc
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger("SlotHive.Identity")


@dataclass(frozen=True)
class RotationResult:
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success}
        if self.error:
            data["error"] = self.error
        return data


class IdentityRotator(abc.ABC):
    @abc.abstractmethod
    def rotate(self) -> RotationResult:
        pass

    @abc.abstractmethod
    def clear(self) -> RotationResult:
        pass

    def name(self) -> str:
        return self.__class__.__name__


class NoRotation(IdentityRotator):
    """Default collaborator: rotation unavailable, the Scout falls back to cooldown"""

    def rotate(self) -> RotationResult:
        logger.debug("[IDENTITY] No rotator configured")
        return RotationResult(success=False, error="NO_ROTATOR")

    def clear(self) -> RotationResult:
        return RotationResult(success=True)
