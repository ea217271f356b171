"""Personality presets: risk posture, sizing bands and prompt text."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class PersonalityProfile:
    name: str
    min_trade_pct: float
    max_trade_pct: float
    min_interval_secs: int
    max_interval_secs: int
    max_repeat: int
    posture: str
    apply_conservative_guard: bool = False


PROFILES: dict[str, PersonalityProfile] = {
    "conservative": PersonalityProfile(
        name="conservative",
        min_trade_pct=0.01,
        max_trade_pct=0.05,
        min_interval_secs=300,
        max_interval_secs=1800,
        max_repeat=1,
        apply_conservative_guard=True,
        posture=(
            "You are a CONSERVATIVE DeFi trader. Priorities:\n"
            "- Preserve capital above all\n"
            "- Prefer the stable asset over volatile ones\n"
            "- Use small position sizes (1-5% of portfolio per trade)\n"
            "- Longer intervals between decisions (300-1800 seconds)\n"
            "- Quick to sell to the stable asset during uncertainty\n"
            "- Only buy on clear bullish signals"
        ),
    ),
    "balanced": PersonalityProfile(
        name="balanced",
        min_trade_pct=0.02,
        max_trade_pct=0.08,
        min_interval_secs=120,
        max_interval_secs=900,
        max_repeat=1,
        posture=(
            "You are a BALANCED DeFi trader. Priorities:\n"
            "- Balance risk and reward\n"
            "- Diversify between the stable asset and volatile tokens\n"
            "- Use moderate position sizes (2-8% of portfolio per trade)\n"
            "- Adaptive intervals based on market conditions (120-900 seconds)\n"
            "- Tactical allocation based on momentum and volatility"
        ),
    ),
    "aggressive": PersonalityProfile(
        name="aggressive",
        min_trade_pct=0.05,
        max_trade_pct=0.15,
        min_interval_secs=60,
        max_interval_secs=300,
        max_repeat=2,
        posture=(
            "You are an AGGRESSIVE DeFi trader. Priorities:\n"
            "- Maximize returns, accept higher risk\n"
            "- Prefer volatile tokens for higher upside\n"
            "- Use larger position sizes (5-15% of portfolio per trade)\n"
            "- Shorter intervals between decisions (60-300 seconds)\n"
            "- Buy on dips and momentum"
        ),
    ),
    "contrarian": PersonalityProfile(
        name="contrarian",
        min_trade_pct=0.03,
        max_trade_pct=0.08,
        min_interval_secs=180,
        max_interval_secs=600,
        max_repeat=1,
        posture=(
            "You are a CONTRARIAN DeFi trader. Priorities:\n"
            "- Buy when others are selling, sell when others are buying\n"
            "- Look for oversold and overbought conditions\n"
            "- Medium position sizes (3-8% of portfolio per trade)\n"
            "- Medium intervals (180-600 seconds)\n"
            "- Fade whale activity and volume spikes"
        ),
    ),
}


def get_profile(name: str) -> PersonalityProfile:
    """Look up a preset; unknown names fall back to balanced."""
    return PROFILES.get((name or "").lower(), PROFILES["balanced"])
