# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""JSON API response models."""

from typing import List, Optional

from pydantic import BaseModel, Field

from dataexpl.core.models import ProviderInfo


class ProviderInfoResponse(BaseModel):
    address: str
    peer_id: Optional[str] = None
    multiaddrs: List[str] = Field(default_factory=list, description="Binary multiaddrs, hex encoded")

    @classmethod
    def from_info(cls, info: ProviderInfo) -> "ProviderInfoResponse":
        return cls(address=info.address, peer_id=info.peer_id, multiaddrs=[a.hex() for a in info.multiaddrs])


class PolicyInfo(BaseModel):
    max_depth: int
    max_width: int
    max_price: Optional[str] = Field(None, description="attoFIL ceiling; null when disabled")


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    node_url: str
    node_connected: bool
    policy: PolicyInfo
