from typing import Annotated, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from plan_relay.services.plan_codec import Action, Plan, hex_to_bytes, hex_to_int


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SwapRequest(CamelModel):
    kind: Literal["swap"]
    token_in: str
    token_out: str
    amount_in: str
    funding_policy: Literal["auto", "require_tokenIn"] = "require_tokenIn"
    amount_out_min: str | None = None
    fee_tier: int | None = Field(default=None, ge=100, le=10000)


class LendSupplyRequest(CamelModel):
    kind: Literal["lend_supply"]
    asset: str
    amount: str
    vault: str | None = None


class PerpRequest(CamelModel):
    kind: Literal["perp"]
    market: str
    side: Literal["long", "short"]
    leverage: float = Field(gt=0)
    margin_usd: float = Field(gt=0)
    risk_pct: float | None = None


class EventRequest(CamelModel):
    kind: Literal["event"]
    market_id: str
    outcome: Literal["YES", "NO"]
    stake_usd: float = Field(gt=0)
    price: float | None = None


ExecutionRequest = Annotated[
    Union[SwapRequest, LendSupplyRequest, PerpRequest, EventRequest],
    Field(discriminator="kind"),
]


class PrepareRequest(CamelModel):
    draft_id: str | None = None
    user_address: str
    execution_request: ExecutionRequest
    auth_mode: Literal["direct", "session"] | None = None


class PlanActionModel(CamelModel):
    action_type: int = Field(ge=0, le=255)
    adapter: str | None = None
    data: str = "0x"


class PlanModel(CamelModel):
    user: str
    nonce: int | str
    deadline: int | str
    actions: List[PlanActionModel] = Field(default_factory=list)

    def to_plan(self) -> Plan:
        return Plan(
            user=self.user.lower(),
            nonce=hex_to_int(self.nonce),
            deadline=hex_to_int(self.deadline),
            actions=tuple(
                Action(action_type=a.action_type, adapter=(a.adapter or "").lower(), data=hex_to_bytes(a.data))
                for a in self.actions
            ),
        )


class RelayedRequest(CamelModel):
    draft_id: str | None = None
    user_address: str | None = None
    plan: PlanModel | None = None
    session_id: str | None = None
    value: str | None = "0x0"


class SubmitRequest(CamelModel):
    draft_id: str | None = None
    tx_hash: str | None = None
    user_address: str | None = None


class SessionPrepareRequest(CamelModel):
    user_address: str | None = None


class SessionStatusRequest(CamelModel):
    user_address: str | None = None
    session_id: str | None = None


class SessionRevokeRequest(CamelModel):
    user_address: str | None = None
    session_id: str | None = None
