import argparse
import logging
import sys
from functools import partial

import anyio

from flightsql_oauth.client.config import SERVER_SIDE_FLOW, OAuthConfiguration
from flightsql_oauth.shared.exceptions import OAuthFlowError

logger = logging.getLogger("flightsql_oauth")


# 获取一次令牌并输出到标准输出
async def main(config: OAuthConfiguration) -> str:
    provider = await config.create_token_provider()
    logger.info("Requesting token using the %s flow", config.flow)
    return await provider.get_valid_token()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flightsql-oauth",
        description="Obtain a bearer token for a Flight SQL server and print it.",
    )
    parser.add_argument("--flow", default=SERVER_SIDE_FLOW, help="authorization_code or server_side")
    parser.add_argument("--issuer", dest="oidc_issuer", help="OIDC issuer URL used for endpoint discovery")
    parser.add_argument("--authorization-url", help="Authorization endpoint (skips discovery)")
    parser.add_argument("--token-uri", help="Token endpoint (skips discovery)")
    parser.add_argument("--client-id", help="OAuth client identifier")
    parser.add_argument("--client-secret", help="OAuth client secret, for IdPs that require one")
    parser.add_argument("--scope", help="Space separated scopes, e.g. 'openid email'")
    parser.add_argument("--oauth-server-url", help="Base URL of the server's OAuth service")
    parser.add_argument(
        "--insecure",
        action="store_true",
        help="Skip TLS certificate verification for the OAuth service",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser


def cli(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    # 日志写到 stderr，令牌写到 stdout
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, stream=sys.stderr)

    try:
        config = OAuthConfiguration(
            flow=args.flow,
            token_uri=args.token_uri,
            authorization_url=args.authorization_url,
            oidc_issuer=args.oidc_issuer,
            client_id=args.client_id,
            client_secret=args.client_secret,
            scope=args.scope,
            oauth_server_url=args.oauth_server_url,
            disable_certificate_verification=args.insecure,
        )
        token = anyio.run(partial(main, config))
    except OAuthFlowError as e:
        logger.error("Error: %s", e)
        return 1

    print(token)
    return 0


if __name__ == "__main__":
    sys.exit(cli())
