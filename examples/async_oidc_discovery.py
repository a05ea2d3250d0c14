import asyncio
import contextlib
import os
import sys

# Add src to path for running directly
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))

from anyio import create_task_group

from coreason_rp.config import RelyingPartySettings
from coreason_rp.exceptions import CoreasonRPError
from coreason_rp.manager import RelyingParty
from coreason_rp.models import ClientConfig


async def main() -> None:
    """
    Demonstrates the start of a hybrid flow against a provider.
    Includes:
    - TaskGroup for concurrent discovery and JWKS fetching
    - State and nonce generation
    - OpenTelemetry instrumentation (auto-applied in RelyingParty)
    """
    print(">>> Starting Async Relying Party Example")

    settings = RelyingPartySettings(issuer="https://auth.example.com", http_timeout=5.0)
    client = ClientConfig(
        client_id="my-rp",
        client_secret="change-me-to-a-long-random-secret",
        redirect_uris=["https://rp.example.com/callback"],
        response_types=["code id_token"],
    )

    async with RelyingParty(client, settings) as rp:
        print(">>> Starting concurrent OIDC tasks...")
        try:
            async with create_task_group() as tg:
                print("    - Spawning discovery task")
                tg.start_soon(rp.discover)

                print("    - Spawning JWKS fetch task")
                tg.start_soon(rp.provider.get_key_set, True)

            checks = rp.create_state("code id_token", max_age=300)
            url = await rp.authorization_url(
                "code id_token",
                state=checks.state,
                nonce=checks.nonce,
                redirect_uri=checks.redirect_uri,
                max_age=checks.max_age,
            )
            print(f">>> Redirect the user to: {url}")
            print(">>> Keep these values for the callback:", checks.model_dump())

        except* CoreasonRPError as eg:
            # Without a real provider, discovery fails after retries
            print(f">>> Expected failure (no real server): {eg.exceptions[0]}")


if __name__ == "__main__":
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())
