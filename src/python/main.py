"""elibconv — CLI and JSON-RPC server."""

import argparse
import json
import logging
import sys

from batch import run_batch, scan_inputs
from config import ConversionConfig, MERGE_MODES
from errors import ElibConvError

logger = logging.getLogger("elibconv")


def setup_logging(verbose: bool = False) -> None:
    """Log to stderr; stdout is reserved for results and JSON-RPC responses."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.INFO)


def load_config(path: str | None = None, **overrides) -> ConversionConfig:
    config = ConversionConfig.from_file(path) if path else ConversionConfig()
    return config.with_overrides(**overrides)


def convert(path: str, config: ConversionConfig, progress=None) -> dict:
    """Run a batch and return a JSON-ready summary."""
    result = run_batch(path, config, progress=progress)
    return {
        "reports": [r.to_dict() for r in result.reports],
        "written": result.written,
        "failed": len(result.failed),
        "cancelled": result.cancelled,
    }


# ── JSON-RPC Server ──────────────────────────────────────────────────────────

def _jsonrpc_response(id, result=None, error=None):
    resp = {"jsonrpc": "2.0", "id": id}
    if error is not None:
        resp["error"] = {"code": -32000, "message": str(error)}
    else:
        resp["result"] = result
    return resp


def handle_jsonrpc(request: dict) -> dict:
    """Handle a single JSON-RPC request."""
    req_id = request.get("id")
    method = request.get("method", "")
    params = request.get("params") or {}

    try:
        if method == "ping":
            return _jsonrpc_response(req_id, "pong")

        elif method == "convert":
            overrides = params.get("options") or {}
            config = load_config(params.get("config"), **overrides)
            return _jsonrpc_response(req_id, convert(params["path"], config))

        elif method == "scan":
            return _jsonrpc_response(req_id, scan_inputs(params["path"]))

        else:
            return _jsonrpc_response(req_id, error=f"Unknown method: {method}")

    except KeyError as e:
        return _jsonrpc_response(req_id, error=f"Missing parameter: {e}")
    except (ElibConvError, ValueError, TypeError, OSError) as e:
        return _jsonrpc_response(req_id, error=str(e))


def serve(stdin=None, stdout=None):
    """Run JSON-RPC server on stdin/stdout."""
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout
    logger.info("elibconv sidecar ready")
    for line in stdin:
        line = line.strip()
        if not line:
            continue
        try:
            request = json.loads(line)
            response = handle_jsonrpc(request)
        except json.JSONDecodeError as e:
            response = _jsonrpc_response(None, error=f"Invalid JSON: {e}")
        stdout.write(json.dumps(response) + "\n")
        stdout.flush()


# ── CLI ──────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="elibconv — convert EasyEDA/JLC library archives to KiCad libraries"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command")

    conv = subparsers.add_parser("convert", help="Convert a file or folder of archives")
    conv.add_argument("path", help="Archive file or folder")
    conv.add_argument("--config", help="JSON config file")
    conv.add_argument("-o", "--output-dir", help="Output directory")
    conv.add_argument("--symbol-lib", help="Symbol library name")
    conv.add_argument("--symbol-dir", help="Symbol library subdirectory")
    conv.add_argument("--footprint-lib", help="Footprint library name")
    conv.add_argument("--model-dir", help="3D model subdirectory")
    conv.add_argument("--no-symbol", action="store_true", help="Skip symbols")
    conv.add_argument("--no-footprint", action="store_true", help="Skip footprints")
    conv.add_argument("--no-models", action="store_true", help="Do not copy 3D models")
    conv.add_argument("--merge-mode", choices=MERGE_MODES, help="Flush per item or once per batch")
    conv.add_argument("--workers", type=int, help="Decode worker threads")
    conv.add_argument("--upgrade", action="store_true",
                      help="Run kicad-cli sym upgrade on the symbol library")
    conv.add_argument("--register", action="store_true",
                      help="Register the libraries in KiCad's global lib tables")
    conv.add_argument("--kicad-config-dir", help="KiCad config directory for --register")
    conv.add_argument("--json", action="store_true", help="Print reports as JSON")

    scan = subparsers.add_parser("scan", help="List devices without converting")
    scan.add_argument("path", help="Archive file or folder")

    subparsers.add_parser("serve", help="Run JSON-RPC server on stdin/stdout")
    return parser


def _config_from_args(args) -> ConversionConfig:
    return load_config(
        args.config,
        output_dir=args.output_dir,
        symbol_lib=args.symbol_lib,
        symbol_dir=args.symbol_dir,
        footprint_lib=args.footprint_lib,
        model_dir=args.model_dir,
        create_symbol=False if args.no_symbol else None,
        create_footprint=False if args.no_footprint else None,
        copy_models=False if args.no_models else None,
        merge_mode=args.merge_mode,
        workers=args.workers,
        upgrade_with_kicad_cli=True if args.upgrade else None,
        register_libraries=True if args.register else None,
        kicad_config_dir=args.kicad_config_dir,
    )


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    if args.command == "convert":
        try:
            config = _config_from_args(args)
            summary = convert(args.path, config, progress=logger.info)
        except (ElibConvError, ValueError, OSError) as e:
            print(f"Error: {e}")
            sys.exit(1)

        if args.json:
            print(json.dumps(summary, indent=2))
        else:
            for report in summary["reports"]:
                print(f"{report['status']:8} {report['identifier']}")
                for w in report["warnings"]:
                    print(f"  Warning: {w}")
                if report["error"]:
                    print(f"  Error: {report['error']}")
            for path in summary["written"]:
                print(f"Wrote: {path}")
        if summary["failed"]:
            sys.exit(1)

    elif args.command == "scan":
        try:
            entries = scan_inputs(args.path)
        except ElibConvError as e:
            print(f"Error: {e}")
            sys.exit(1)
        print(json.dumps(entries, indent=2, ensure_ascii=False))

    elif args.command == "serve":
        serve()

    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
