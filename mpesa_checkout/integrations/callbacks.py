"""
STK push callback payload models.

Daraja posts results to the callback URL with no caller authentication, so the
payload shape is the only thing checked here. Parsing yields either a
``StkCallback`` or a ``MalformedCallback``; nothing downstream sees raw dicts.
"""
from dataclasses import dataclass
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class CallbackItem(BaseModel):
    """One ``{Name, Value}`` pair from ``CallbackMetadata.Item``."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str = Field(..., alias="Name")
    value: Any = Field(default=None, alias="Value")


class CallbackMetadata(BaseModel):
    """Metadata list Daraja attaches to successful payments."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    items: List[CallbackItem] = Field(default_factory=list, alias="Item")


class StkCallback(BaseModel):
    """The ``Body.stkCallback`` object of a shape-valid callback."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    merchant_request_id: Optional[str] = Field(default=None, alias="MerchantRequestID")
    checkout_request_id: str = Field(..., min_length=1, alias="CheckoutRequestID")
    result_code: int = Field(..., alias="ResultCode")
    result_desc: str = Field(default="", alias="ResultDesc")
    callback_metadata: Optional[CallbackMetadata] = Field(default=None, alias="CallbackMetadata")

    @property
    def is_success(self) -> bool:
        return self.result_code == 0

    def metadata_value(self, name: str) -> Any:
        """Value of the named metadata item, or None when absent."""
        if self.callback_metadata is None:
            return None
        for item in self.callback_metadata.items:
            if item.name == name:
                return item.value
        return None


class _CallbackBody(BaseModel):
    stk_callback: StkCallback = Field(..., alias="stkCallback")


class _CallbackEnvelope(BaseModel):
    body: _CallbackBody = Field(..., alias="Body")


@dataclass(frozen=True)
class MalformedCallback:
    """A payload that does not have the expected nested result structure."""

    reason: str


ParsedCallback = Union[StkCallback, MalformedCallback]


def parse_callback(payload: Any) -> ParsedCallback:
    """
    Parse a decoded JSON callback body.

    Args:
        payload: Decoded request body

    Returns:
        ParsedCallback: ``StkCallback`` when the shape is valid, otherwise
        ``MalformedCallback`` describing the first problems found
    """
    try:
        envelope = _CallbackEnvelope.model_validate(payload)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'body'}: {error['msg']}"
            for error in e.errors()[:3]
        )
        return MalformedCallback(reason=problems)
    return envelope.body.stk_callback
