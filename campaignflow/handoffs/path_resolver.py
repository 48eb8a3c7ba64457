"""Normalise the shapes callers use to point at a campaign directory.

Resolution order, first match wins:

1. a direct path (``str`` containing a separator or starting with ``.``/``~``,
   or any ``os.PathLike``);
2. a context object exposing ``campaign.storagePath`` (``CampaignContext`` or
   a mapping ``{"campaign": {"storagePath" | "path" | "campaignPath": ...}}``);
3. a top-level ``campaign_path`` / ``campaignPath`` / ``storage_path`` /
   ``storagePath`` field;
4. a path embedded in a handoff structure (``handoff_info.campaign_path``,
   ``campaign_context.campaign_path`` or ``<name>_context.campaign.campaignPath``);
5. a bare campaign id, mapped to ``<campaigns_root>/<id>/``.

Anything else is a ``PathResolutionError``; there is no default directory.
"""
import os
import re
from pathlib import Path, PurePath
from typing import Any, Dict, List, Mapping, Optional, Union

from campaignflow.shared.settings import HandoffSettings
from campaignflow.specs.common.errors import PathResolutionError
from campaignflow.specs.models.context import CampaignContext

CanonicalPath = str

LAYOUT_DIRS = ("data", "content", "assets", "templates", "docs", "handoffs", "exports", "logs")

_CAMPAIGN_ID = re.compile(r"^[A-Za-z0-9_.-]+$")
_CONTEXT_PATH_KEYS = ("storagePath", "path", "campaignPath")
_TOP_LEVEL_KEYS = ("campaign_path", "campaignPath", "storage_path", "storagePath")


def canonicalize(value: Union[str, "os.PathLike[str]"]) -> CanonicalPath:
    """POSIX separators, user home expanded, exactly one trailing slash."""
    text = os.fspath(value)
    if not isinstance(text, str) or not text.strip():
        raise PathResolutionError("campaign path is empty", details={"value": repr(value)})
    text = os.path.expanduser(text.strip()).replace("\\", "/")
    # collapse duplicate separators without touching relative anchors
    text = re.sub(r"/{2,}", "/", text)
    return text.rstrip("/") + "/" if text != "/" else text


def _looks_like_path(text: str) -> bool:
    return "/" in text or "\\" in text or text.startswith((".", "~"))


def _non_blank(value: Any) -> Optional[str]:
    if isinstance(value, PurePath):
        return os.fspath(value)
    if isinstance(value, str) and value.strip():
        return value
    return None


class CampaignPathResolver:
    def __init__(self, settings: Optional[HandoffSettings] = None) -> None:
        self._settings = settings or HandoffSettings.from_env()

    @property
    def campaigns_root(self) -> Path:
        return self._settings.campaigns_root

    def resolve(self, value: Any) -> CanonicalPath:
        for shape in (
            self._direct_path,
            self._context_path,
            self._top_level_path,
            self._nested_handoff_path,
            self._campaign_id,
        ):
            found = shape(value)
            if found is not None:
                return canonicalize(found)
        raise PathResolutionError(
            "cannot resolve a campaign path from the given value",
            details={"type": type(value).__name__, "value": _preview(value)},
        )

    # shape 1
    @staticmethod
    def _direct_path(value: Any) -> Optional[str]:
        if isinstance(value, os.PathLike):
            return os.fspath(value)
        if isinstance(value, str) and value.strip() and _looks_like_path(value.strip()):
            return value
        return None

    # shape 2
    @staticmethod
    def _context_path(value: Any) -> Optional[str]:
        if isinstance(value, CampaignContext):
            return value.campaign.storagePath
        campaign = _get(value, "campaign")
        if campaign is None:
            return None
        if hasattr(campaign, "storagePath"):
            return _non_blank(getattr(campaign, "storagePath"))
        if isinstance(campaign, Mapping):
            for key in _CONTEXT_PATH_KEYS:
                found = _non_blank(campaign.get(key))
                if found:
                    return found
        return None

    # shape 3
    @staticmethod
    def _top_level_path(value: Any) -> Optional[str]:
        for key in _TOP_LEVEL_KEYS:
            found = _non_blank(_get(value, key))
            if found:
                return found
        return None

    # shape 4
    @staticmethod
    def _nested_handoff_path(value: Any) -> Optional[str]:
        for key in ("handoff_info", "campaign_context"):
            found = _non_blank(_get(_get(value, key), "campaign_path"))
            if found:
                return found
        if isinstance(value, Mapping):
            for key, nested in value.items():
                if not (isinstance(key, str) and key.endswith("_context")):
                    continue
                campaign = _get(nested, "campaign")
                for path_key in ("campaignPath", "campaign_path", "storagePath"):
                    found = _non_blank(_get(campaign, path_key))
                    if found:
                        return found
        return None

    # shape 5
    def _campaign_id(self, value: Any) -> Optional[str]:
        if isinstance(value, str) and _CAMPAIGN_ID.match(value.strip()) and value.strip() not in (".", ".."):
            return os.fspath(self.campaigns_root / value.strip())
        return None

    def standard_paths(self, value: Any) -> Dict[str, CanonicalPath]:
        """Canonical path of every layout directory, keyed by its name."""
        root = self.resolve(value)
        paths = {name: canonicalize(f"{root}{name}") for name in LAYOUT_DIRS}
        paths["root"] = root
        return paths

    def ensure_layout(self, value: Any) -> CanonicalPath:
        root = self.resolve(value)
        try:
            for name in LAYOUT_DIRS:
                Path(root, name).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PathResolutionError(
                f"cannot create campaign layout under {root}",
                details={"campaignPath": root, "error": str(exc)},
            ) from exc
        return root

    def missing_layout(self, value: Any) -> List[str]:
        root = Path(self.resolve(value))
        return [name for name in LAYOUT_DIRS if not (root / name).is_dir()]

    def check_layout(self, value: Any) -> CanonicalPath:
        root = self.resolve(value)
        if not Path(root).is_dir():
            raise PathResolutionError(f"campaign directory {root} does not exist", details={"campaignPath": root})
        missing = self.missing_layout(root)
        if missing:
            raise PathResolutionError(
                f"campaign directory {root} is missing: {', '.join(missing)}",
                details={"campaignPath": root, "missing": missing},
            )
        return root


def _get(value: Any, key: str) -> Any:
    if value is None:
        return None
    if isinstance(value, Mapping):
        return value.get(key)
    return getattr(value, key, None)


def _preview(value: Any) -> str:
    text = repr(value)
    return text if len(text) <= 200 else text[:197] + "..."
