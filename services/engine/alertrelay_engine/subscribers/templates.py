"""Message templates for trigger events (Telegram Markdown or HTML)."""

import html
from typing import Any

from alertrelay_engine.models.events import EventType, TriggerEvent

_MARKDOWN_SPECIAL = ("\\", "_", "*", "`", "[")


def escape_markdown(text: Any) -> str:
    """Escape Telegram legacy-Markdown control characters."""
    value = str(text)
    for char in _MARKDOWN_SPECIAL:
        value = value.replace(char, f"\\{char}")
    return value


def _price(value: Any) -> str:
    if value is None:
        return "-"
    return f"{float(value):,.8f}".rstrip("0").rstrip(".")


def _signed(value: float | None, suffix: str = "") -> str:
    if value is None:
        return "-"
    return f"{'+' if value >= 0 else ''}{value:,.2f}{suffix}"


def _sub_rule(part: dict[str, Any]) -> str:
    label = part.get("indicator") or part.get("field", "")
    if "threshold" in part:
        return f"{label} spike x{part['threshold']}"
    rule = f"{label} {part.get('operator')} {part.get('value')}"
    return rule + (f" / {part['value2']}" if part.get("value2") is not None else "")


class MessageRenderer:
    """Renders recipient-agnostic trigger events into channel text."""

    EMOJIS = {
        EventType.TRADE_OPENED: "📈",
        EventType.TRADE_CLOSED: "📊",
        EventType.TRADE_REPLACED: "🔁",
        EventType.CONDITION_TRIGGERED: "🔔",
    }

    def render(self, event: TriggerEvent, parse_mode: str = "Markdown") -> str:
        """
        Render an event.

        Args:
            event: Trigger event
            parse_mode: "Markdown" or "HTML"

        Returns:
            Message text with user data escaped for the mode
        """
        title, message, details = self._content(event)
        emoji = self.EMOJIS.get(event.event_type, "📌")
        esc = html.escape if parse_mode == "HTML" else escape_markdown

        if parse_mode == "HTML":
            lines = [f"{emoji} <b>{esc(title)}</b>", "", esc(message)]
        else:
            lines = [f"{emoji} *{esc(title)}*", "", esc(message)]

        if details:
            lines.append("")
            for key, value in details.items():
                if value is None:
                    continue
                if parse_mode == "HTML":
                    lines.append(f"• {esc(key)}: <code>{esc(value)}</code>")
                else:
                    # Inline code spans cannot contain backticks
                    lines.append(f"• {esc(key)}: `{str(value).replace('`', '')}`")

        lines.append("")
        lines.append(f"🕐 {event.timestamp.strftime('%Y-%m-%d %H:%M:%S UTC')}")
        return "\n".join(lines)

    def _content(self, event: TriggerEvent) -> tuple[str, str, dict[str, Any]]:
        p = event.payload
        config = event.configuration
        base = {
            "Strategy": config.strategy,
            "Timeframe": config.timeframe,
        }

        if event.event_type is EventType.TRADE_OPENED:
            side = str(p.get("direction", "")).upper()
            return (
                f"Trade #{p.get('trade_number')} Opened: {config.symbol}",
                f"{side} entry at {_price(p.get('entry_price'))}",
                {
                    **base,
                    "Take Profit": _price(p.get("take_profit")) if p.get("take_profit") else None,
                    "Stop Loss": _price(p.get("stop_loss")) if p.get("stop_loss") else None,
                },
            )

        if event.event_type is EventType.TRADE_REPLACED:
            side = str(p.get("direction", "")).upper()
            return (
                f"Trade #{p.get('trade_number')} Replaces #{p.get('replaced_trade_number')}: {config.symbol}",
                f"New {side} entry at {_price(p.get('entry_price'))}. "
                f"Previous entry {_price(p.get('replaced_entry_price'))} was replaced (possible false signal).",
                base,
            )

        if event.event_type is EventType.TRADE_CLOSED:
            pnl = p.get("pnl_amount")
            pct = p.get("pnl_percent")
            emoji = "🟢" if (pnl or 0) >= 0 else "🔴"
            reason = str(p.get("exit_reason") or "").replace("_", " ")
            return (
                f"{emoji} Trade #{p.get('trade_number')} Closed: {config.symbol}",
                f"P&L: {_signed(pnl)} ({_signed(pct, '%')})",
                {
                    **base,
                    "Side": str(p.get("direction", "")).upper(),
                    "Entry": _price(p.get("entry_price")),
                    "Exit": _price(p.get("exit_price")),
                    "Reason": reason,
                },
            )

        # condition.triggered
        details: dict[str, Any] = {**base, "Type": p.get("condition_type")}
        if "current" in p:
            details["Value"] = p.get("current")
        if p.get("operator"):
            details["Rule"] = f"{p.get('operator')} {p.get('value')}" + (
                f" / {p.get('value2')}" if p.get("value2") is not None else ""
            )
        if p.get("conditions"):
            # Sub-conditions without data carry no rule to show
            rules = [
                _sub_rule(part)
                for part in p["conditions"]
                if part.get("operator") or "threshold" in part
            ]
            details["Rule"] = f" {p.get('logical_operator', 'AND')} ".join(rules)
            details["Matched"] = f"{p.get('matched')}/{len(p['conditions'])}"
        if p.get("headline"):
            details["Headline"] = p.get("headline")
            details["Source"] = p.get("source")
        if p.get("expression"):
            details["Expression"] = p.get("expression")
        return (
            f"Alert: {p.get('condition_name')} ({config.symbol})",
            f"Condition met for {config.symbol}",
            details,
        )
