"""Configuration loading for the ePIC PID manager."""

from __future__ import annotations

from dataclasses import dataclass
import os
from typing import Optional


@dataclass
class Settings:
    handle_api_url: str
    handle_user: str
    handle_base: str
    handle_url: str
    handle_password: Optional[str] = None
    handle_certificate: Optional[str] = None
    handle_private_key: Optional[str] = None
    handle_verify_tls: bool = True
    handle_admin_index: int = 300
    handle_metadata: str = "_urn"
    name: Optional[str] = None
    prefix: Optional[str] = None
    separator: str = "-"
    handle_for_logical_document: bool = True
    handle_for_physical_document: bool = True
    handle_for_physical_pages: bool = True
    remove_handles: Optional[str] = None
    doi_generate: bool = False
    doi_mapping: Optional[str] = None
    temp_folder: Optional[str] = None

    def handle_postfix(self) -> str:
        """Return the ``prefix<sep>name<sep>`` part placed before the object id."""
        postfix = ""
        if self.prefix:
            postfix = f"{self.prefix}{self.separator}"
        if self.name:
            postfix += f"{self.name}{self.separator}"
        return postfix


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise RuntimeError(f"{name} must be a boolean flag, got {raw!r}")


def load_settings() -> Settings:
    """Load configuration from environment variables."""
    api_url = os.getenv("EPIC_HANDLE_API_URL")
    user = os.getenv("EPIC_HANDLE_USER")
    base = os.getenv("EPIC_HANDLE_BASE")
    url = os.getenv("EPIC_HANDLE_URL")

    if not api_url or not user or not base or not url:
        raise RuntimeError(
            "EPIC_HANDLE_API_URL, EPIC_HANDLE_USER, EPIC_HANDLE_BASE and EPIC_HANDLE_URL "
            "must be set in the environment."
        )

    admin_index = os.getenv("EPIC_ADMIN_INDEX", "300")
    try:
        handle_admin_index = int(admin_index)
    except ValueError as exc:
        raise RuntimeError(f"EPIC_ADMIN_INDEX must be an integer, got {admin_index!r}") from exc

    return Settings(
        handle_api_url=api_url,
        handle_user=user,
        handle_base=base,
        handle_url=url,
        handle_password=os.getenv("EPIC_HANDLE_PASSWORD"),
        handle_certificate=os.getenv("EPIC_CERTIFICATE"),
        handle_private_key=os.getenv("EPIC_PRIVATE_KEY"),
        handle_verify_tls=_env_flag("EPIC_VERIFY_TLS", True),
        handle_admin_index=handle_admin_index,
        handle_metadata=os.getenv("EPIC_HANDLE_METADATA", "_urn"),
        name=os.getenv("EPIC_NAME"),
        prefix=os.getenv("EPIC_PREFIX"),
        separator=os.getenv("EPIC_SEPARATOR", "-"),
        handle_for_logical_document=_env_flag("EPIC_HANDLE_FOR_LOGICAL_DOCUMENT", True),
        handle_for_physical_document=_env_flag("EPIC_HANDLE_FOR_PHYSICAL_DOCUMENT", True),
        handle_for_physical_pages=_env_flag("EPIC_HANDLE_FOR_PHYSICAL_PAGES", True),
        remove_handles=os.getenv("EPIC_REMOVE_HANDLES") or None,
        doi_generate=_env_flag("EPIC_DOI_GENERATE", False),
        doi_mapping=os.getenv("EPIC_DOI_MAPPING"),
        temp_folder=os.getenv("EPIC_TEMP_FOLDER"),
    )
