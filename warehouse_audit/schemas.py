"""Request schemas for the audit endpoints."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator

from warehouse_audit.models import FixAction

MAX_FIX_MOVEMENTS = 100
MAX_FIX_QUANTITY = 1_000_000


class ConsistencyFixRequest(BaseModel):
    """A correction chosen by an operator for one consistency issue.

    Accepts both camelCase (``movementIds``) and snake_case keys.
    """

    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    action: FixAction
    type: str | None = None
    movement_ids: list[int] | None = Field(default=None, alias='movementIds', max_length=MAX_FIX_MOVEMENTS)
    delivery_id: int | None = Field(default=None, alias='deliveryId', gt=0)
    new_quantity: int | None = Field(default=None, alias='newQuantity', ge=0, le=MAX_FIX_QUANTITY)
    epp_id: int | None = Field(default=None, alias='eppId', gt=0)
    batch_id: int | None = Field(default=None, alias='batchId', gt=0)

    @model_validator(mode='after')
    def _require_action_fields(self) -> ConsistencyFixRequest:
        if self.action == FixAction.DELETE_MOVEMENT:
            if not self.movement_ids:
                raise ValueError('movementIds is required for DELETE_MOVEMENT')
            if any(movement_id <= 0 for movement_id in self.movement_ids):
                raise ValueError('movementIds must be positive')
        elif self.action == FixAction.UPDATE_DELIVERY:
            if self.delivery_id is None or self.new_quantity is None:
                raise ValueError('deliveryId and newQuantity are required for UPDATE_DELIVERY')
        elif self.action == FixAction.CREATE_MOVEMENT:
            if self.epp_id is None or self.batch_id is None:
                raise ValueError('eppId and batchId are required for CREATE_MOVEMENT')
            if self.new_quantity is not None and self.new_quantity <= 0:
                raise ValueError('newQuantity must be greater than zero for CREATE_MOVEMENT')
        return self
