"""
CLI tool to place an outbound call without going through the HTTP API.

The call is placed with the configured Twilio account; the provider then
fetches instructions from BACKEND_URL, so the API server must be running
and reachable there.

Usage:
    python scripts/make_call.py --to <destination> (--from <number> | --from-identity <id>) [--direct]

Examples:
    # Ring my phone, then dial a PSTN number from it
    python scripts/make_call.py --from +15550100 --to +15550199

    # Ring alice's app, then connect her to bob's app without prompts
    python scripts/make_call.py --from-identity alice --to client:bob --direct
"""

import argparse
import asyncio
import os
import sys

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from dotenv import load_dotenv
load_dotenv(".env.local")

from callbridge.api.deps import build_services
from callbridge.config import get_settings
from callbridge.errors import CallbridgeError
from callbridge.logging_config import setup_logging, get_logger
from callbridge.schemas.call import MakeCallRequest

setup_logging()
logger = get_logger(__name__)


async def make_call(
    to: str,
    from_: str | None = None,
    from_identity: str | None = None,
    direct: bool = False,
) -> int:
    """Place a single outbound call. Returns a process exit code."""
    services = build_services(get_settings())

    try:
        call_sid = await services.calls.make_call(
            MakeCallRequest(to=to, from_=from_, from_identity=from_identity),
            direct=direct,
        )
        print(f"Call placed: {call_sid}")
        return 0
    except CallbridgeError as e:
        print(f"Call failed ({e.status_code}): {e.message}")
        return 1
    finally:
        await services.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Place an outbound call")
    parser.add_argument("--to", required=True, help="Phone number or client:<identity>")
    parser.add_argument("--from", dest="from_", help="Caller phone number")
    parser.add_argument("--from-identity", help="Caller app identity")
    parser.add_argument("--direct", action="store_true", help="Connect without prompts or dial callbacks")

    args = parser.parse_args()

    if not args.from_ and not args.from_identity:
        parser.error("Provide either --from or --from-identity")

    sys.exit(asyncio.run(make_call(
        to=args.to,
        from_=args.from_,
        from_identity=args.from_identity,
        direct=args.direct,
    )))


if __name__ == "__main__":
    main()
