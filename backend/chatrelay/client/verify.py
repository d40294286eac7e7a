"""End-to-end verification against a running chatrelay server.

Two users are given tokens signed with the configured JWT secret, then:

    1. both connect; A resolves the direct conversation with B over REST
    2. both join ``conversation:<id>``
    3. A starts and stops typing → B sees user_typing / user_typing_stop
    4. A sends a message over the socket → A's outbox entry is confirmed,
       B gets receive_message
    5. B fetches the history over REST → A gets messages_read

Run with ``chatrelay-verify --url http://localhost:8000``.
"""
import argparse
import asyncio
import logging
import sys
from typing import Optional

import httpx

from chatrelay.auth.service import TokenService
from chatrelay.config import get_config

from .session import ClientSession, OutboxState

logger = logging.getLogger(__name__)


def _ws_url(base_url: str) -> str:
    if base_url.startswith("https://"):
        return "wss://" + base_url[len("https://"):]
    if base_url.startswith("http://"):
        return "ws://" + base_url[len("http://"):]
    return base_url


async def run_verification(
    base_url: str,
    user_a: str = "verify-alice",
    user_b: str = "verify-bob",
    tokens: Optional[TokenService] = None,
    timeout: float = 5.0,
) -> dict:
    """Run the scenario. Returns a summary dict; raises on the first failure."""
    tokens = tokens or TokenService.from_config(get_config())
    token_a = tokens.create_access_token(user_a)
    token_b = tokens.create_access_token(user_b)

    alice = ClientSession(_ws_url(base_url), token_a)
    bob = ClientSession(_ws_url(base_url), token_b)

    async with httpx.AsyncClient(base_url=base_url, timeout=timeout) as http:
        await alice.connect(timeout)
        await bob.connect(timeout)
        try:
            # 1. Direct conversation
            resp = await http.get(
                f"/conversations/user/{user_b}",
                headers={"Authorization": f"Bearer {token_a}"},
            )
            resp.raise_for_status()
            conversation_id = resp.json()["conversation"]["id"]
            logger.info(f"[Verify] Direct conversation {conversation_id}")

            # 2. Rooms
            room = f"conversation:{conversation_id}"
            await alice.join(room, timeout)
            await bob.join(room, timeout)

            # 3. Typing
            await alice.start_typing(conversation_id)
            await bob.wait_for("user_typing", lambda d: d["userId"] == user_a, timeout)
            await alice.stop_typing(conversation_id)
            await bob.wait_for("user_typing_stop", lambda d: d["userId"] == user_a, timeout)
            logger.info("[Verify] Typing relayed")

            # 4. Send
            entry = await alice.send_message(
                conversation_id=conversation_id, content="Hello from verification script!"
            )
            await alice.settled(entry, timeout)
            if entry.state != OutboxState.CONFIRMED:
                raise RuntimeError(f"Send failed: {entry.error}")
            received = await bob.wait_for(
                "receive_message", lambda d: d["id"] == entry.message_id, timeout
            )
            logger.info(f"[Verify] Message {received['id']} delivered")

            # 5. Read receipt through history fetch
            resp = await http.get(
                f"/messages/conversation/{conversation_id}",
                headers={"Authorization": f"Bearer {token_b}"},
            )
            resp.raise_for_status()
            receipt = await alice.wait_for(
                "messages_read", lambda d: entry.message_id in d["messageIds"], timeout
            )
            logger.info(f"[Verify] Read receipt from {receipt['userId']}")

            return {
                "conversationId": conversation_id,
                "messageId": entry.message_id,
                "readBy": receipt["userId"],
            }
        finally:
            await alice.close()
            await bob.close()


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Verify a running chatrelay server end to end")
    parser.add_argument("--url", default="http://localhost:8000", help="Server base URL")
    parser.add_argument("--user-a", default="verify-alice")
    parser.add_argument("--user-b", default="verify-bob")
    parser.add_argument("--timeout", type=float, default=5.0)
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    try:
        summary = asyncio.run(
            run_verification(args.url, args.user_a, args.user_b, timeout=args.timeout)
        )
    except Exception as e:
        logger.error(f"[Verify] FAILED: {e}")
        return 1

    logger.info(f"[Verify] OK: {summary}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
