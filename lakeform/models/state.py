"""State entries — what was last applied for each resource."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class StateEntry(BaseModel):
    """Last-applied snapshot of one resource."""

    address: str                            # kind.name, unique in the store
    kind: str
    name: str
    provider_id: Optional[str] = None       # Identifier assigned by the provider
    attributes: dict = {}                   # Desired + provider-computed values
    content_hash: str                       # Hash of the declaration that produced it
    dependencies: List[str] = []            # Addresses this resource depended on
    sensitive_attributes: List[str] = []
    updated_at: datetime
