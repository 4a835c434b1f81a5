"""
Source fetchers.

``create_fetchers`` builds every known source in registry order; the
aggregator groups them by their configured tier and skips disabled ones.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Type

from vulnintel.core.config import Settings, get_settings
from vulnintel.services.fetchers.base import BaseFetcher, SourceOutcome
from vulnintel.services.fetchers.epss import EpssFetcher
from vulnintel.services.fetchers.exploitdb import ExploitDbFetcher
from vulnintel.services.fetchers.feeds import (
    CertCcFetcher,
    SansIscFetcher,
    VulDbFetcher,
    ZdiFetcher,
)
from vulnintel.services.fetchers.kev import CisaKevFetcher
from vulnintel.services.fetchers.mitre import MitreFetcher
from vulnintel.services.fetchers.nvd import NvdFetcher
from vulnintel.services.fetchers.otx import OtxFetcher
from vulnintel.services.http_client import ResilientHttpClient

FETCHER_REGISTRY: Dict[str, Type[BaseFetcher]] = {
    cls.name: cls
    for cls in (
        NvdFetcher,
        MitreFetcher,
        CisaKevFetcher,
        ExploitDbFetcher,
        VulDbFetcher,
        ZdiFetcher,
        SansIscFetcher,
        CertCcFetcher,
        OtxFetcher,
        EpssFetcher,
    )
}


def create_fetchers(
    client: ResilientHttpClient,
    settings: Optional[Settings] = None,
    *,
    include_disabled: bool = False,
) -> List[BaseFetcher]:
    settings = settings or get_settings()
    fetchers = [cls(client, settings) for cls in FETCHER_REGISTRY.values()]
    if include_disabled:
        return fetchers
    return [f for f in fetchers if f.enabled]


__all__ = [
    "BaseFetcher",
    "SourceOutcome",
    "FETCHER_REGISTRY",
    "create_fetchers",
    "NvdFetcher",
    "MitreFetcher",
    "CisaKevFetcher",
    "ExploitDbFetcher",
    "VulDbFetcher",
    "ZdiFetcher",
    "SansIscFetcher",
    "CertCcFetcher",
    "OtxFetcher",
    "EpssFetcher",
]
