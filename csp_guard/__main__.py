"""
csp-guard CLI
"""
import argparse
import json
import sys

from csp_guard.config.loader import CspSettings, read_app_config, read_config
from csp_guard.config.policy_config import DELIVERY_HEADER, calculate_config
from csp_guard.diagnostics import LogDiagnostics
from csp_guard.logging_config import setup_logging
from csp_guard.middleware.csp_builder import CSP_REPORT_URI, build_policy_string
from csp_guard.snapshot import PolicyBuilder


def _settings_from_args(args, **extra) -> CspSettings:
    """Build settings, letting explicit CLI flags win over env vars."""
    overrides = {
        "environment": args.environment,
        "project_root": args.project_root,
        "config_file": args.config_file,
        **extra,
    }
    return CspSettings(**{key: value for key, value in overrides.items() if value is not None})


def main(argv=None):
    """Main CLI entry point"""
    parser = argparse.ArgumentParser(
        prog="csp-guard",
        description="Content-Security-Policy generation and delivery",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Print the header for production
  python -m csp_guard headers --environment production

  # Print the header with a report-uri, without explanations
  python -m csp_guard headers -e production --report-uri https://example.com/csp --silent

  # Print the payload for a server-rendering host
  python -m csp_guard runtime-config -e production

  # Serve a build with live reload
  python -m csp_guard serve --static-dir dist --live-reload --include-tests
        """
    )
    parser.add_argument('--environment', '-e', help='Environment to compute the policy for')
    parser.add_argument('--project-root', help='Directory holding config/')
    parser.add_argument('--config-file', help='CSP config file, relative to the project root')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Headers command
    headers_parser = subparsers.add_parser('headers', help='Print the CSP header for an environment')
    headers_parser.add_argument('--report-uri', help='Add a report-uri directive')
    headers_parser.add_argument('--silent', action='store_true',
                                help='Only print the header line')

    # Runtime config command
    subparsers.add_parser('runtime-config',
                          help='Print the server-rendering runtime payload as JSON')

    # Serve command
    serve_parser = subparsers.add_parser('serve', help='Serve the app with CSP delivery')
    serve_parser.add_argument('--host', help='Interface to bind')
    serve_parser.add_argument('--port', type=int, help='Port to bind')
    serve_parser.add_argument('--static-dir', help='Built app to serve, relative to the project root')
    serve_parser.add_argument('--include-tests', action=argparse.BooleanOptionalAction, default=None,
                              help='Serve the test policy under the test path')
    serve_parser.add_argument('--live-reload', action=argparse.BooleanOptionalAction, default=None,
                              help='Allow live reload origins')
    serve_parser.add_argument('--live-reload-host', help='Extra live reload host')
    serve_parser.add_argument('--live-reload-port', type=int, help='Live reload port')
    serve_parser.add_argument('--ssl-keyfile', help='TLS key (enables https)')
    serve_parser.add_argument('--ssl-certfile', help='TLS certificate (enables https)')

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == 'headers':
        return cmd_headers(args)
    if args.command == 'runtime-config':
        return cmd_runtime_config(args)
    if args.command == 'serve':
        return cmd_serve(args)
    return 0


def cmd_headers(args):
    """Print the header line for the configured environment"""
    settings = _settings_from_args(args)
    setup_logging(log_level="warning", json_format=False, stream=sys.stderr)
    diagnostics = LogDiagnostics()

    environment = settings.environment
    config = calculate_config(
        environment,
        read_config(settings.config_path(), environment),
        read_app_config(settings.app_config_path(), environment),
        diagnostics,
    )
    policy = config.copy_policy()
    if args.report_uri:
        policy[CSP_REPORT_URI] = args.report_uri

    if not args.silent:
        if not config.enabled:
            print(f"# CSP is disabled for '{environment}'; the app sends no header.", file=sys.stderr)
        elif not config.delivers(DELIVERY_HEADER):
            print(f"# '{environment}' delivers the CSP by meta tag only; "
                  "set this header on your web server yourself.", file=sys.stderr)
        if config.report_only and CSP_REPORT_URI not in policy:
            print("# Report-only policy without report-uri: violations are not "
                  "reported anywhere. Pass --report-uri.", file=sys.stderr)

    print(f"{config.header_name}: {build_policy_string(policy, diagnostics)}")
    return 0


def cmd_runtime_config(args):
    """Print the payload a server-rendering host sets the header from"""
    settings = _settings_from_args(args, server_rendering=True)
    setup_logging(log_level="warning", json_format=False, stream=sys.stderr)

    snapshot = PolicyBuilder.from_settings(settings, LogDiagnostics()).build()
    print(json.dumps(snapshot.runtime_config(), indent=2))
    return 0


def cmd_serve(args):
    """Run the app under uvicorn"""
    import uvicorn

    from csp_guard.main import create_app

    ssl = bool(args.ssl_keyfile and args.ssl_certfile)
    settings = _settings_from_args(
        args,
        host=args.host,
        port=args.port,
        ssl=ssl or None,
        static_dir=args.static_dir,
        include_tests=args.include_tests,
        live_reload=args.live_reload,
        live_reload_host=args.live_reload_host,
        live_reload_port=args.live_reload_port,
    )
    app = create_app(settings)
    uvicorn.run(
        app,
        host=settings.host or "localhost",
        port=settings.port,
        ssl_keyfile=args.ssl_keyfile if ssl else None,
        ssl_certfile=args.ssl_certfile if ssl else None,
        log_config=None,
    )
    return 0


if __name__ == '__main__':
    sys.exit(main())
