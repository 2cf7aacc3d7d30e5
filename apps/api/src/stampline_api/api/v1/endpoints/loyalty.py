"""API endpoints for counter QR earns, reward redemption, and program administration."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from stampline_api.api.dependencies.security import require_admin_api_key
from stampline_api.core.settings import settings
from stampline_api.db.session import get_session
from stampline_api.models.loyalty import (
    LoyaltyEarnMode,
    LoyaltyMembership,
    LoyaltyMembershipStatus,
    LoyaltyProgram,
    LoyaltyProgramStatus,
    LoyaltyProgramType,
)
from stampline_api.services.loyalty import (
    ConcurrentUpdateError,
    EarnEngine,
    EarnResult,
    InvalidProgramDefinitionError,
    InvalidProgramTransitionError,
    JOINABLE_PROGRAM_STATUSES,
    LoyaltyAnalyticsService,
    LoyaltyErrorCode,
    LoyaltyProgramDefinition,
    MembershipStore,
    PassSyncNotifier,
    PassSyncRequest,
    ProgramNotFoundError,
    ProgramRegistry,
    PublicIdAllocationError,
    RedemptionEngine,
    RedemptionStatus,
    dispatch_pass_sync,
    get_pass_sync_notifier,
)
from stampline_api.services.loyalty.fraud import client_ip_from_headers
from stampline_api.services.loyalty.memberships import authoritative_balance
from stampline_api.services.loyalty.pass_fields import (
    calculate_progress,
    get_pass_field_values,
    get_proximity_message,
    has_pass_credentials,
)


router = APIRouter(prefix="/loyalty", tags=["loyalty"])


_EARN_STATUS_CODES = {
    LoyaltyErrorCode.PROGRAM_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    LoyaltyErrorCode.PROGRAM_NOT_ACTIVE: status.HTTP_400_BAD_REQUEST,
    LoyaltyErrorCode.INVALID_TOKEN: status.HTTP_403_FORBIDDEN,
    LoyaltyErrorCode.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    LoyaltyErrorCode.IP_VELOCITY: status.HTTP_429_TOO_MANY_REQUESTS,
    LoyaltyErrorCode.CONFLICT: status.HTTP_409_CONFLICT,
}

_CONSUME_STATUS_CODES = {
    LoyaltyErrorCode.MEMBERSHIP_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    LoyaltyErrorCode.PROGRAM_NOT_ACTIVE: status.HTTP_400_BAD_REQUEST,
    LoyaltyErrorCode.INSUFFICIENT_BALANCE: status.HTTP_409_CONFLICT,
    LoyaltyErrorCode.CONFLICT: status.HTTP_409_CONFLICT,
}


class EarnRequest(BaseModel):
    publicId: str = Field(..., min_length=1, max_length=32)
    token: str = Field(..., min_length=1, max_length=128)
    customerPassId: str = Field(..., min_length=1, max_length=255)


class EarnResponse(BaseModel):
    success: bool
    newBalance: int
    threshold: int
    rewardUnlocked: bool
    proximityMessage: Optional[str]
    nextEligibleAt: Optional[datetime]
    earnedTodayCount: int
    error: Optional[str] = None
    reason: Optional[str] = None
    programStatus: Optional[str] = None
    membershipId: Optional[UUID] = None


class JoinRequest(BaseModel):
    publicId: str = Field(..., min_length=1, max_length=32)
    customerPassId: str = Field(..., min_length=1, max_length=255)
    passSerial: Optional[str] = Field(default=None, min_length=1, max_length=255)


class JoinResponse(BaseModel):
    success: bool
    membershipId: UUID
    alreadyMember: bool
    hasWalletPass: bool
    passSerial: Optional[str]
    fields: dict[str, str]


class ConsumeRequest(BaseModel):
    membershipId: UUID


class ConsumeResponse(BaseModel):
    redemptionId: UUID
    rewardDescription: str
    consumedAt: datetime
    displayExpiresAt: datetime
    newBalance: int
    threshold: int
    replayed: bool


class RedemptionStatusResponse(BaseModel):
    id: UUID
    membershipId: UUID
    rewardDescription: str
    status: str
    consumedAt: datetime
    displayExpiresAt: datetime
    timeRemainingMs: int
    isActive: bool
    stampsDeducted: int
    flaggedAt: Optional[datetime] = None
    flaggedReason: Optional[str] = None


class FlagRedemptionRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class ProgramCreateRequest(BaseModel):
    businessId: str = Field(..., min_length=1)
    businessName: Optional[str] = None
    programName: Optional[str] = None
    programType: LoyaltyProgramType = LoyaltyProgramType.STAMPS
    rewardThreshold: int = Field(..., gt=0)
    rewardDescription: str = Field(..., min_length=1)
    stampLabel: str = "Stamps"
    stampIcon: str = "stamp"
    earnMode: LoyaltyEarnMode = LoyaltyEarnMode.PER_VISIT
    earnIncrement: int = Field(default=1, gt=0)
    maxEarnsPerDay: int = Field(default=1, ge=0)
    allowUncappedEarns: bool = False
    minGapMinutes: int = Field(default=0, ge=0)
    timezone: str = "Europe/London"
    passTemplateId: Optional[str] = None
    passApiKey: Optional[str] = None
    passTypeId: Optional[str] = None


class ProgramResponse(BaseModel):
    id: UUID
    publicId: str
    businessId: str
    businessName: Optional[str]
    programName: Optional[str]
    programType: str
    rewardThreshold: int
    rewardDescription: str
    stampLabel: str
    stampIcon: str
    earnMode: str
    earnIncrement: int
    maxEarnsPerDay: int
    allowUncappedEarns: bool
    minGapMinutes: int
    timezone: str
    status: str
    passConfigured: bool


class ProgramAdminResponse(ProgramResponse):
    counterQrToken: str
    tokenRotatedAt: Optional[datetime]


class ProgramStatusRequest(BaseModel):
    status: LoyaltyProgramStatus


class RotateTokenResponse(BaseModel):
    publicId: str
    counterQrToken: str
    graceMinutes: int


class MemberResponse(BaseModel):
    id: UUID
    customerPassId: str
    balance: int
    totalEarned: int
    totalRedeemed: int
    status: str
    joinedAt: datetime
    lastActiveAt: Optional[datetime]
    lastEarnedAt: Optional[datetime]
    progress: int


class ProgramSummaryResponse(BaseModel):
    programId: UUID
    activeMembers: int
    visitsThisMonth: int
    rewardsRedeemedThisMonth: int
    estimatedValueGivenAway: float
    avgVisitsPerMember: float
    membersNearReward: int
    flaggedRedemptions: int


class PassSerialRequest(BaseModel):
    passSerial: Optional[str] = Field(default=None, max_length=255)


class MembershipStatusRequest(BaseModel):
    status: LoyaltyMembershipStatus


class PassFieldsResponse(BaseModel):
    membershipId: UUID
    fields: dict[str, str]
    proximityMessage: Optional[str]
    progress: int


def get_notifier() -> PassSyncNotifier:
    return get_pass_sync_notifier()


def _schedule_pass_sync(
    background_tasks: BackgroundTasks,
    notifier: PassSyncNotifier,
    request: PassSyncRequest | None,
) -> None:
    if request is None or not settings.pass_sync_enabled:
        return
    background_tasks.add_task(dispatch_pass_sync, notifier, request)


def _serialize_earn(result: EarnResult) -> EarnResponse:
    return EarnResponse(
        success=result.success,
        newBalance=result.new_balance,
        threshold=result.threshold,
        rewardUnlocked=result.reward_unlocked,
        proximityMessage=result.proximity_message,
        nextEligibleAt=result.next_eligible_at,
        earnedTodayCount=result.earned_today_count,
        error=result.error.value if result.error else None,
        reason=result.reason,
        programStatus=result.program_status.value if result.program_status else None,
        membershipId=result.membership_id,
    )


def _serialize_status(view: RedemptionStatus) -> RedemptionStatusResponse:
    return RedemptionStatusResponse(
        id=view.redemption_id,
        membershipId=view.membership_id,
        rewardDescription=view.reward_description,
        status=view.status.value,
        consumedAt=view.consumed_at,
        displayExpiresAt=view.display_expires_at,
        timeRemainingMs=view.time_remaining_ms,
        isActive=view.is_active,
        stampsDeducted=view.stamps_deducted,
        flaggedAt=view.flagged_at,
        flaggedReason=view.flagged_reason,
    )


def _program_fields(program: LoyaltyProgram) -> dict[str, object]:
    return {
        "id": program.id,
        "publicId": program.public_id,
        "businessId": program.business_id,
        "businessName": program.business_name,
        "programName": program.program_name,
        "programType": LoyaltyProgramType(program.program_type).value,
        "rewardThreshold": program.reward_threshold,
        "rewardDescription": program.reward_description,
        "stampLabel": program.stamp_label,
        "stampIcon": program.stamp_icon,
        "earnMode": LoyaltyEarnMode(program.earn_mode).value,
        "earnIncrement": program.earn_increment,
        "maxEarnsPerDay": program.max_earns_per_day,
        "allowUncappedEarns": program.allow_uncapped_earns,
        "minGapMinutes": program.min_gap_minutes,
        "timezone": program.timezone,
        "status": LoyaltyProgramStatus(program.status).value,
        "passConfigured": has_pass_credentials(program),
    }


def _serialize_program(program: LoyaltyProgram) -> ProgramResponse:
    return ProgramResponse(**_program_fields(program))


def _serialize_program_admin(program: LoyaltyProgram) -> ProgramAdminResponse:
    return ProgramAdminResponse(
        **_program_fields(program),
        counterQrToken=program.counter_qr_token,
        tokenRotatedAt=program.token_rotated_at,
    )


def _serialize_member(program: LoyaltyProgram, membership: LoyaltyMembership) -> MemberResponse:
    balance = authoritative_balance(program, membership)
    return MemberResponse(
        id=membership.id,
        customerPassId=membership.customer_pass_id,
        balance=balance,
        totalEarned=membership.total_earned,
        totalRedeemed=membership.total_redeemed,
        status=LoyaltyMembershipStatus(membership.status).value,
        joinedAt=membership.joined_at,
        lastActiveAt=membership.last_active_at,
        lastEarnedAt=membership.last_earned_at,
        progress=calculate_progress(balance, program.reward_threshold),
    )


async def _require_program(registry: ProgramRegistry, public_id: str) -> LoyaltyProgram:
    try:
        return await registry.require_by_public_id(public_id)
    except ProgramNotFoundError as error:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Program not found") from error


@router.post("/earn", response_model=EarnResponse)
async def record_earn(
    payload: EarnRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_session),
    notifier: PassSyncNotifier = Depends(get_notifier),
) -> EarnResponse:
    """Record a counter QR scan for a customer pass."""

    peer = request.client.host if request.client else None
    client_ip = client_ip_from_headers(request.headers.get("x-forwarded-for"), peer)

    engine = EarnEngine(db)
    result = await engine.record_earn(
        payload.publicId,
        payload.customerPassId,
        payload.token,
        client_ip,
    )

    if result.error in _EARN_STATUS_CODES:
        raise HTTPException(
            status_code=_EARN_STATUS_CODES[result.error],
            detail={"error": result.error.value, "reason": result.reason},
        )

    _schedule_pass_sync(background_tasks, notifier, result.pass_sync)
    return _serialize_earn(result)


@router.post("/join", response_model=JoinResponse, status_code=status.HTTP_201_CREATED)
async def join_program(
    payload: JoinRequest,
    response: Response,
    db: AsyncSession = Depends(get_session),
) -> JoinResponse:
    """Enrol a customer pass and register the wallet pass serial used for field updates."""

    program = await ProgramRegistry(db).get_by_public_id(payload.publicId)
    if program is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": LoyaltyErrorCode.PROGRAM_NOT_FOUND.value, "reason": "Program not found."},
        )
    if LoyaltyProgramStatus(program.status) not in JOINABLE_PROGRAM_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": LoyaltyErrorCode.PROGRAM_NOT_ACTIVE.value,
                "reason": "This program is not accepting new members.",
            },
        )

    outcome = await MembershipStore(db).join(program, payload.customerPassId, pass_serial=payload.passSerial)
    membership = outcome.membership
    if outcome.already_member and not outcome.lost_race:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "already_member", "reason": "Already a member", "membershipId": str(membership.id)},
        )
    if outcome.lost_race:
        response.status_code = status.HTTP_200_OK

    balance = authoritative_balance(program, membership)
    return JoinResponse(
        success=True,
        membershipId=membership.id,
        alreadyMember=outcome.already_member,
        hasWalletPass=bool(membership.pass_serial),
        passSerial=membership.pass_serial,
        fields=get_pass_field_values(program, balance),
    )


@router.post(
    "/redemptions/consume",
    response_model=ConsumeResponse,
    status_code=status.HTTP_201_CREATED,
)
async def consume_redemption(
    payload: ConsumeRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_session),
    notifier: PassSyncNotifier = Depends(get_notifier),
) -> ConsumeResponse:
    """Deduct one reward's worth of balance and open the staff verification window."""

    engine = RedemptionEngine(db)
    result = await engine.consume_redemption(payload.membershipId)
    if not result.success:
        code = _CONSUME_STATUS_CODES.get(result.error, status.HTTP_400_BAD_REQUEST)
        raise HTTPException(
            status_code=code,
            detail={
                "error": result.error.value if result.error else None,
                "reason": result.reason,
                "balance": result.new_balance,
                "threshold": result.threshold,
            },
        )

    _schedule_pass_sync(background_tasks, notifier, result.pass_sync)
    return ConsumeResponse(
        redemptionId=result.redemption_id,
        rewardDescription=result.reward_description,
        consumedAt=result.consumed_at,
        displayExpiresAt=result.display_expires_at,
        newBalance=result.new_balance,
        threshold=result.threshold,
        replayed=result.replayed,
    )


@router.get("/redemptions/{redemption_id}", response_model=RedemptionStatusResponse)
async def get_redemption_status(
    redemption_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> RedemptionStatusResponse:
    engine = RedemptionEngine(db)
    view = await engine.get_redemption_status(redemption_id)
    if view is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Redemption not found")
    return _serialize_status(view)


@router.post(
    "/redemptions/{redemption_id}/flag",
    response_model=RedemptionStatusResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def flag_redemption(
    redemption_id: UUID,
    payload: FlagRedemptionRequest,
    db: AsyncSession = Depends(get_session),
) -> RedemptionStatusResponse:
    engine = RedemptionEngine(db)
    try:
        view = await engine.flag_redemption(redemption_id, payload.reason)
    except ValueError as error:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error)) from error
    if view is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Redemption not found")
    return _serialize_status(view)


@router.post(
    "/programs",
    response_model=ProgramAdminResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin_api_key)],
)
async def create_program(
    payload: ProgramCreateRequest,
    db: AsyncSession = Depends(get_session),
) -> ProgramAdminResponse:
    """Create a draft program with a fresh counter token."""

    definition = LoyaltyProgramDefinition(
        business_id=payload.businessId,
        business_name=payload.businessName,
        program_name=payload.programName,
        program_type=payload.programType,
        reward_threshold=payload.rewardThreshold,
        reward_description=payload.rewardDescription,
        stamp_label=payload.stampLabel,
        stamp_icon=payload.stampIcon,
        earn_mode=payload.earnMode,
        earn_increment=payload.earnIncrement,
        max_earns_per_day=payload.maxEarnsPerDay,
        allow_uncapped_earns=payload.allowUncappedEarns,
        min_gap_minutes=payload.minGapMinutes,
        timezone=payload.timezone,
        pass_template_id=payload.passTemplateId,
        pass_api_key=payload.passApiKey,
        pass_type_id=payload.passTypeId,
    )
    registry = ProgramRegistry(db)
    try:
        program = await registry.create_program(definition)
    except InvalidProgramDefinitionError as error:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(error)) from error
    except PublicIdAllocationError as error:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(error)) from error
    return _serialize_program_admin(program)


@router.get("/programs/{public_id}", response_model=ProgramResponse)
async def get_program(
    public_id: str,
    db: AsyncSession = Depends(get_session),
) -> ProgramResponse:
    program = await _require_program(ProgramRegistry(db), public_id)
    return _serialize_program(program)


@router.post(
    "/programs/{public_id}/status",
    response_model=ProgramResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def update_program_status(
    public_id: str,
    payload: ProgramStatusRequest,
    db: AsyncSession = Depends(get_session),
) -> ProgramResponse:
    registry = ProgramRegistry(db)
    program = await _require_program(registry, public_id)
    try:
        program = await registry.transition(program.id, payload.status)
    except InvalidProgramTransitionError as error:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error)) from error
    except ConcurrentUpdateError as error:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error)) from error
    return _serialize_program(program)


@router.post(
    "/programs/{public_id}/rotate-token",
    response_model=RotateTokenResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def rotate_counter_token(
    public_id: str,
    db: AsyncSession = Depends(get_session),
) -> RotateTokenResponse:
    registry = ProgramRegistry(db)
    program = await _require_program(registry, public_id)
    try:
        token = await registry.rotate_token(program.id)
    except ConcurrentUpdateError as error:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error)) from error
    return RotateTokenResponse(
        publicId=public_id,
        counterQrToken=token,
        graceMinutes=settings.loyalty_token_grace_minutes,
    )


@router.get(
    "/programs/{public_id}/members",
    response_model=List[MemberResponse],
    dependencies=[Depends(require_admin_api_key)],
)
async def list_program_members(
    public_id: str,
    status_filter: Optional[LoyaltyMembershipStatus] = Query(default=None, alias="status"),
    since_days: Optional[int] = Query(default=None, alias="sinceDays", ge=1, le=365),
    db: AsyncSession = Depends(get_session),
) -> List[MemberResponse]:
    program = await _require_program(ProgramRegistry(db), public_id)
    members = await MembershipStore(db).list_members(program.id, status=status_filter, since_days=since_days)
    return [_serialize_member(program, membership) for membership in members]


@router.get(
    "/programs/{public_id}/summary",
    response_model=ProgramSummaryResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def get_program_summary(
    public_id: str,
    db: AsyncSession = Depends(get_session),
) -> ProgramSummaryResponse:
    program = await _require_program(ProgramRegistry(db), public_id)
    summary = await LoyaltyAnalyticsService(db).summarize(program.id)
    return ProgramSummaryResponse(
        programId=summary.program_id,
        activeMembers=summary.active_members,
        visitsThisMonth=summary.visits_this_month,
        rewardsRedeemedThisMonth=summary.rewards_redeemed_this_month,
        estimatedValueGivenAway=summary.estimated_value_given_away,
        avgVisitsPerMember=summary.avg_visits_per_member,
        membersNearReward=summary.members_near_reward,
        flaggedRedemptions=summary.flagged_redemptions,
    )


@router.put(
    "/memberships/{membership_id}/pass-serial",
    response_model=MemberResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def update_membership_pass_serial(
    membership_id: UUID,
    payload: PassSerialRequest,
    db: AsyncSession = Depends(get_session),
) -> MemberResponse:
    """Attach (or clear) the wallet pass serial once a pass has been issued."""

    membership = await MembershipStore(db).set_pass_serial(membership_id, payload.passSerial)
    if membership is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Membership not found")
    program = await ProgramRegistry(db).get_program(membership.program_id)
    return _serialize_member(program, membership)


@router.post(
    "/memberships/{membership_id}/status",
    response_model=MemberResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def update_membership_status(
    membership_id: UUID,
    payload: MembershipStatusRequest,
    db: AsyncSession = Depends(get_session),
) -> MemberResponse:
    membership = await MembershipStore(db).set_status(membership_id, payload.status)
    if membership is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Membership not found")
    program = await ProgramRegistry(db).get_program(membership.program_id)
    return _serialize_member(program, membership)


@router.get("/memberships/{membership_id}/pass-fields", response_model=PassFieldsResponse)
async def get_membership_pass_fields(
    membership_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> PassFieldsResponse:
    membership = await MembershipStore(db).get(membership_id)
    if membership is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Membership not found")
    program = await ProgramRegistry(db).get_program(membership.program_id)
    if program is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Program not found")

    balance = authoritative_balance(program, membership)
    return PassFieldsResponse(
        membershipId=membership.id,
        fields=get_pass_field_values(program, balance),
        proximityMessage=get_proximity_message(balance, program.reward_threshold),
        progress=calculate_progress(balance, program.reward_threshold),
    )
