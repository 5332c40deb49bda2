"""
authpipe Demo Application

Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

This demo runs a complete login against a local provider:
- Authorization redirect with state, nonce and PKCE
- Code exchange and ID-token verification
- Session issuance and verification
- Replay rejection and session key rotation
"""

import asyncio
import logging
import sys
from datetime import timedelta

from authpipe.audit.logger import MemoryAuditLogger
from authpipe.common.utils import generate_secure_token
from authpipe.core.config import PipelineConfig, config_summary
from authpipe.core.pipeline import AuthPipeline
from authpipe.crypto.keys import SigningKey
from authpipe.demo.provider import FakeProvider
from authpipe.errors import AuthenticationFailed
from authpipe.oauth2.types import ProviderConfig
from authpipe.session.issuer import SessionConfig

CLIENT_ID = "demo-client"
REDIRECT_URI = "http://localhost:8080/callback"


async def run_demo() -> int:
    """Main demo function"""
    print("authpipe Demo Application")
    print("=" * 50)
    print()

    client_secret = generate_secure_token()
    async with FakeProvider(CLIENT_ID, client_secret, REDIRECT_URI) as provider:
        config = PipelineConfig(
            provider=ProviderConfig(
                issuer=provider.issuer,
                client_id=CLIENT_ID,
                client_secret=client_secret,
                redirect_uri=REDIRECT_URI,
                authorization_endpoint=provider.authorization_endpoint,
                token_endpoint=provider.token_endpoint,
                jwks_uri=provider.jwks_uri,
                scopes=["openid", "email"],
            ),
            session=SessionConfig(
                issuer="https://app.example",
                audience="app-sessions",
                ttl=timedelta(hours=1),
                embedded_claims=["email"],
            ),
            session_keys=[SigningKey.from_secret("session-1", generate_secure_token(32))],
        )

        audit = MemoryAuditLogger()
        async with AuthPipeline.new(config, audit_logger=audit) as pipeline:
            print("✓ Created login pipeline")
            for name, value in config_summary(config).items():
                print(f"  - {name}: {value}")
            print()

            print("Step 1: Authorization Redirect")
            print("-" * 40)
            url = await pipeline.begin_login(login_hint="alice@example.com")
            print(f"✓ Redirect to {url.split('?')[0]}")
            print()

            print("Step 2: Provider Callback")
            print("-" * 40)
            code, state = provider.approve(url, "alice", {"email": "alice@example.com"})
            session = await pipeline.complete_login(code, state, timeout=10.0)
            print("✓ Session issued")
            print(f"  - Subject: {session.subject}")
            print(f"  - Session ID: {session.session_id}")
            print(f"  - Expires At: {session.expires_at.isoformat()}")
            print()

            print("Step 3: Session Verification")
            print("-" * 40)
            claims = await pipeline.verify_session(session.token)
            print(f"✓ Session valid for {claims['sub']} ({claims.get('email')})")
            print()

            print("Step 4: Replayed Callback")
            print("-" * 40)
            try:
                await pipeline.complete_login(code, state)
                print("✗ Replay was accepted")
                return 1
            except AuthenticationFailed as e:
                print(f"✓ Replay rejected ({e.diagnostic_code})")
            print()

            print("Step 5: Session Key Rotation")
            print("-" * 40)
            pipeline.rotate_session_key(
                SigningKey.from_secret("session-2", generate_secure_token(32)),
                grace=timedelta(minutes=5),
            )
            await pipeline.verify_session(session.token)
            print("✓ Existing session still valid during grace period")
            print()

            print("Audit Trail")
            print("-" * 40)
            for event in await audit.get_events():
                suffix = f" ({event.diagnostic_code})" if event.diagnostic_code else ""
                print(f"  - {event.event_type.value}{suffix}")

    print()
    print("Demo completed successfully!")
    return 0


def main() -> int:
    """Console entry point."""
    logging.basicConfig(level=logging.WARNING,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    return asyncio.run(run_demo())


if __name__ == "__main__":
    sys.exit(main())
