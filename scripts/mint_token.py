# scripts/mint_token.py
import argparse  # parse CLI args
import os  # read environment variables
from datetime import datetime, timedelta, timezone  # create an expiry timestamp

from jose import jwt  # create a JWT token


def main() -> None:  # main entrypoint
    parser = argparse.ArgumentParser(description="Mint a dev bearer token for the raffle ledger API")
    parser.add_argument("--user-id", required=True)  # becomes the `sub` claim
    parser.add_argument("--role", choices=["user", "admin"], default="user")  # admin unlocks /admin routes
    parser.add_argument("--ttl-minutes", type=int, default=60)  # token lifetime
    args = parser.parse_args()

    secret = os.environ.get("AUTH_SIGNING_SECRET", "dev_secret_change_me")  # same secret the API verifies with
    exp_ts = int((datetime.now(timezone.utc) + timedelta(minutes=args.ttl_minutes)).timestamp())

    payload = {"sub": args.user_id, "role": args.role, "exp": exp_ts}
    print(jwt.encode(payload, secret, algorithm="HS256"))


if __name__ == "__main__":  # run as script
    main()
