"""Display copy and wallet pass field values derived from balances."""

from __future__ import annotations

from stampline_api.models.loyalty import LoyaltyMembership, LoyaltyProgram


REWARD_AVAILABLE_STATUS = "Reward Available!"
REWARD_REDEEMED_STATUS = "Reward Redeemed!"


def get_proximity_message(balance: int, threshold: int) -> str | None:
    remaining = threshold - balance
    if remaining <= 0:
        return "Reward available!"
    if remaining == 1:
        return "Just 1 more visit!"
    if remaining == 2:
        return "Only 2 more to go!"
    if remaining == 3:
        return "Almost there — 3 more!"
    if balance >= threshold / 2:
        return "You're over halfway!"
    return None


def calculate_progress(balance: int, threshold: int) -> int:
    """Percentage towards the reward, capped at 100."""

    if threshold <= 0:
        return 0
    return min(round(balance / threshold * 100), 100)


def get_pass_field_values(program: LoyaltyProgram, balance: int) -> dict[str, str]:
    return {
        "Points": str(balance),
        "Threshold": str(program.reward_threshold),
        "Status": f"{balance}/{program.reward_threshold} {program.stamp_label}",
        "Reward": program.reward_description,
    }


def get_unlocked_pass_field_values(program: LoyaltyProgram, balance: int) -> dict[str, str]:
    business = program.business_name or "this business"
    fields = get_pass_field_values(program, balance)
    fields["Status"] = REWARD_AVAILABLE_STATUS
    fields["Last_Message"] = f"You earned a free {program.reward_description} at {business}!"
    return fields


def get_redeemed_pass_field_values(program: LoyaltyProgram, balance: int) -> dict[str, str]:
    fields = get_pass_field_values(program, balance)
    fields["Status"] = REWARD_REDEEMED_STATUS
    fields["Last_Message"] = f"You redeemed {program.reward_description}!"
    return fields


def has_pass_credentials(program: LoyaltyProgram) -> bool:
    return bool(program.pass_template_id and program.pass_api_key and program.pass_type_id)


def can_sync_pass(program: LoyaltyProgram, membership: LoyaltyMembership) -> bool:
    return has_pass_credentials(program) and bool(membership.pass_serial)


__all__ = [
    "REWARD_AVAILABLE_STATUS",
    "REWARD_REDEEMED_STATUS",
    "calculate_progress",
    "can_sync_pass",
    "get_pass_field_values",
    "get_proximity_message",
    "get_redeemed_pass_field_values",
    "get_unlocked_pass_field_values",
    "has_pass_credentials",
]
