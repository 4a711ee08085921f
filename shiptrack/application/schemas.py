from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Any, Dict, Optional


class CamelModel(BaseModel):
    """Wire payloads use camelCase keys."""

    model_config = {
        "populate_by_name": True,
        "alias_generator": to_camel,
    }

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Client -> server
# ---------------------------------------------------------------------------

class ClientFrame(BaseModel):
    event: str = Field(min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)


class ShipmentRoomRequest(CamelModel):
    shipment_id: str

    @field_validator("shipment_id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        # Numeric ids are accepted and normalised to strings
        if isinstance(value, int) and not isinstance(value, bool):
            value = str(value)
        if isinstance(value, str):
            value = value.strip()
        if not value:
            raise ValueError("shipmentId required")
        return value


# ---------------------------------------------------------------------------
# Server -> client
# ---------------------------------------------------------------------------

class JoinedConfirmation(CamelModel):
    shipment_id: str
    viewer_count: int


class WatcherArrived(CamelModel):
    shipment_id: str
    user_id: Optional[str] = None
    role: str
    connection_id: str


class WatcherDeparted(CamelModel):
    shipment_id: str
    user_id: Optional[str] = None
    role: str
    connection_id: str
    viewer_count: int


class ShipmentUpdated(CamelModel):
    shipment_id: str
    status: Optional[str] = None
    status_changed_at: Optional[str] = None
    changed_by: Optional[str] = None
    shipment: Optional[Dict[str, Any]] = None
    inspection_status: Optional[str] = None
    inspection: Optional[Dict[str, Any]] = None
    rejection_reason: Optional[str] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[str] = None
    inventory: Optional[Dict[str, Any]] = None


class DocumentInfo(CamelModel):
    id: str
    file_name: Optional[str] = None
    document_type: Optional[str] = None
    file_size: Optional[int] = None
    uploaded_at: Optional[str] = None
    uploaded_by: str = "system"
    is_verified: bool = False
    uploaded_by_supplier: Optional[bool] = None


class DocumentUploaded(CamelModel):
    shipment_id: str
    document: DocumentInfo


class InventoryCounts(CamelModel):
    pallets: Optional[int] = None
    cartons: Optional[int] = None
    items: Optional[int] = None
    weight: Optional[float] = None
    warehouse_location: Optional[str] = None


class WarehouseCapacityUpdated(CamelModel):
    location: str
    total_capacity: int
    available_bins: int
    used_capacity: int


class ErrorEvent(CamelModel):
    message: str
    code: Optional[str] = None


# ---------------------------------------------------------------------------
# Workflow inputs
# ---------------------------------------------------------------------------

class ShipmentCreate(BaseModel):
    order_ref: str = Field(min_length=1)
    supplier: str = Field(min_length=1)
    supplier_id: Optional[str] = None
    quantity: float = Field(ge=0)
    freight: str = "airfreight"
    notes: Optional[str] = None

