from __future__ import annotations

from pathlib import Path

import structlog

from src.phone_orders.config import Config
from src.phone_orders.menu import MenuIndex

logger = structlog.get_logger(__name__)

_DEFAULT_MAX_PROMPT_CHARS = 40_000

DEFAULT_INSTRUCTIONS = """You take phone orders for {STORE_NAME} in {STORE_LOCATION}. Sound like a friendly, busy pizza place employee: short, simple sentences, one question at a time.

MENU:
{MENU}

How to take the order:
- Wait until the caller has completely finished speaking before you answer. Never talk over them.
- Every time the caller orders something, call add_item_to_order first, then confirm it briefly (for example: "Large pepperoni pizza, anything else?").
- Only offer items from the menu above. If something is not on the menu, say so and suggest something close.
- Let the caller add several items. Ask "Pickup or delivery?" once they say they are done.
- When they answer, call set_delivery_method. For delivery, ask for the address and call set_address, then repeat the address back.
- Ask for the name for the order and call set_customer_name. If they give a callback number, call set_customer_phone. If they say how they will pay, call set_payment_method.
- Before confirming, read back every item and the total (tax included). When the caller agrees, call confirm_order, then tell them it will be ready in about 20 minutes for pickup or 30 to 45 minutes for delivery.
- After any tool call, always say something. Never go silent.
- If a tool returns ok=false, do not mention errors; just ask the caller again.
- Never ask "What would you like to order?" again once items are in the order; ask "Anything else?" instead."""

GREETING_INSTRUCTION = (
    'The caller just connected. Greet them with exactly: "Thanks for calling {STORE_NAME}. '
    'What would you like to order?" Then stop and wait for them to answer.'
)


def _repo_root() -> Path:
    # src/phone_orders/prompt.py -> repo root is ../../
    return Path(__file__).resolve().parents[2]


def _read_text_file(path: str, *, max_chars: int) -> str:
    if not path:
        return ""

    file_path = Path(path)
    if not file_path.is_absolute():
        file_path = _repo_root() / file_path

    try:
        content = file_path.read_text(encoding="utf-8-sig")
    except FileNotFoundError:
        logger.warning("Prompt file not found", path=str(file_path))
        return ""
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Prompt file read failed", path=str(file_path), error=str(e))
        return ""

    content = content.strip()
    if len(content) > max_chars:
        logger.warning("Prompt truncated (too long)", path=str(file_path), max_chars=max_chars)
        content = content[:max_chars]
    return content


def apply_placeholders(prompt: str, config: Config, menu: MenuIndex) -> str:
    if not prompt:
        return ""

    replacements = {
        "{STORE_NAME}": config.store_name,
        "{STORE_LOCATION}": config.store_location,
        "{MENU}": menu.to_prompt_text() or "(menu unavailable)",
    }
    for key, value in replacements.items():
        prompt = prompt.replace(key, value)
    return prompt


def resolve_instructions(
    config: Config,
    menu: MenuIndex,
    *,
    max_chars: int = _DEFAULT_MAX_PROMPT_CHARS,
) -> str:
    """
    Session instructions from (1) inline config text, else (2) the
    instructions file, else (3) the built-in ordering prompt.
    """
    prompt = (config.openai_realtime_instructions or "").strip()
    if not prompt:
        prompt = _read_text_file(config.openai_realtime_instructions_file, max_chars=max_chars)
    if not prompt:
        prompt = DEFAULT_INSTRUCTIONS
    return apply_placeholders(prompt, config, menu)


def greeting_text(config: Config) -> str:
    return GREETING_INSTRUCTION.replace("{STORE_NAME}", config.store_name)
