import argparse
import json

from dotenv import load_dotenv

from app.db import SessionLocal
from app.schemas.integration import IntegrationConfigUpsert
from app.services.integration_config import IntegrationConfigs


def parse_args():
    parser = argparse.ArgumentParser(description="Seed or update an integration config row.")
    parser.add_argument("--service-name", required=True)
    parser.add_argument("--environment", choices=["production", "sandbox"])
    parser.add_argument("--endpoint-url")
    parser.add_argument("--api-key")
    parser.add_argument("--sandbox-endpoint-url")
    parser.add_argument("--sandbox-api-key")
    parser.add_argument("--webhook-token")
    parser.add_argument(
        "--variables",
        help='JSON object, e.g. \'{"instance_name": "billing"}\'',
    )
    return parser.parse_args()


def main():
    load_dotenv()
    args = parse_args()
    fields = {
        "environment": args.environment,
        "endpoint_url": args.endpoint_url,
        "api_key": args.api_key,
        "sandbox_endpoint_url": args.sandbox_endpoint_url,
        "sandbox_api_key": args.sandbox_api_key,
        "webhook_token": args.webhook_token,
    }
    if args.variables:
        fields["variables"] = json.loads(args.variables)
    payload = IntegrationConfigUpsert(
        **{key: value for key, value in fields.items() if value is not None}
    )
    db = SessionLocal()
    try:
        config = IntegrationConfigs.upsert(db, args.service_name, payload)
        print(f"Integration config '{config.service_name}' saved ({config.environment.value}).")
    finally:
        db.close()


if __name__ == "__main__":
    main()
