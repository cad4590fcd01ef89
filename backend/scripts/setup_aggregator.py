#!/usr/bin/env python3
"""Open Banking aggregator setup script.

Validates aggregator client credentials by performing a client-credentials
token exchange, then offers to store them in the OS keychain.  Bank linking
itself happens in the browser through the aggregator's consent screen.

Usage:
    1. Register an application with the aggregator
    2. Copy the client ID and client secret it issues
    3. Run ``python -m scripts.setup_aggregator`` and follow the prompts
"""

import os
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

from config import settings
from integrations.aggregator_client import AggregatorClient
from integrations.exceptions import AggregatorAuthError, AggregatorError
from services.credential_manager import set_credential

SETUP_OWNER_ID = "setup-check"


def validate_credentials(client_id: str, client_secret: str, token_url: str | None = None) -> int:
    """Exchange credentials for a token.

    Returns:
        The token lifetime in seconds.

    Raises:
        AggregatorError: If the exchange fails.
    """
    client = AggregatorClient(
        client_id=client_id,
        client_secret=client_secret,
        token_url=token_url or settings.AGGREGATOR_TOKEN_URL,
    )
    try:
        token = client.get_access_token(SETUP_OWNER_ID)
    finally:
        client.close()
    return token.expires_in


def store_credentials(credentials: dict[str, str]) -> list[str]:
    """Store credentials in the keychain, returning the keys that failed."""
    failed = []
    for key, value in credentials.items():
        if set_credential(key, value):
            print(f"  Stored {key} in keychain")
        else:
            print(f"  Failed to store {key}")
            failed.append(key)
    return failed


def main():
    """Prompt for credentials, validate them and optionally store them."""
    print("Open Banking Aggregator Setup")
    print("=" * 50)
    print()
    print(f"Token endpoint: {settings.AGGREGATOR_TOKEN_URL}")
    print(f"API base:       {settings.AGGREGATOR_API_URL}")
    print()

    # Existing .env values are offered as defaults
    load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))
    existing_id = os.environ.get("AGGREGATOR_CLIENT_ID", "")

    prompt = "Enter your aggregator client ID"
    if existing_id:
        prompt += f" [{existing_id}]"
    client_id = input(f"{prompt}: ").strip() or existing_id
    if not client_id:
        print("Error: No client ID provided")
        sys.exit(1)

    client_secret = input("Enter your aggregator client secret: ").strip()
    if not client_secret:
        print("Error: No client secret provided")
        sys.exit(1)

    print()
    print("Validating credentials...")
    try:
        expires_in = validate_credentials(client_id, client_secret)
    except AggregatorAuthError:
        print("Error: The aggregator rejected these credentials.")
        sys.exit(1)
    except AggregatorError as e:
        print(f"Error: {e}")
        print()
        print("Common issues:")
        print("  - Sandbox credentials used against the production token URL")
        print("  - Network connectivity issue")
        sys.exit(1)

    print(f"Success! Token issued (valid for {expires_in}s).")

    answer = input("\nStore these credentials in the keychain? [Y/n] ").strip().lower()
    if answer in ("", "y", "yes"):
        store_credentials({
            "AGGREGATOR_CLIENT_ID": client_id,
            "AGGREGATOR_CLIENT_SECRET": client_secret,
        })
    else:
        print()
        print("Add the following to your .env file instead:")
        print(f"AGGREGATOR_CLIENT_ID={client_id}")
        print(f"AGGREGATOR_CLIENT_SECRET={client_secret}")


if __name__ == "__main__":
    main()
