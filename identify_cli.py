import argparse
import json
import mimetypes
import sys
import time
from pathlib import Path
from typing import List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8080"
TERMINAL = ("done", "failed")


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _print_job(data: dict, verbose: bool = False) -> None:
    if not data:
        print("No job data.")
        return
    model = data.get("model") or "-"
    print(f"Job {data.get('id')}: {data.get('status')} (attempts {data.get('attempts', 0)}, model {model})")
    if data.get("status") == "failed":
        error = data.get("error") or {}
        print(f"Error {error.get('code')}: {error.get('message')}")
    if data.get("status") == "done":
        products = (data.get("result") or {}).get("products") or []
        for product in products:
            ident = product.get("identification") or {}
            price = ((product.get("details") or {}).get("pricing") or {}).get("lowest_price") or {}
            amount = price.get("amount")
            price_text = f"{amount} {price.get('currency', '')}".strip() if amount else "no price"
            print(f"- {ident.get('brand', '')} {ident.get('name', '')} [{ident.get('method')}] {price_text}".strip())
        print(f"Search calls: {len(data.get('trace') or [])}")
        if verbose:
            print(json.dumps(data.get("result"), indent=2, ensure_ascii=False))


def _fetch_job(client: httpx.Client, base: str, job_id: str) -> Optional[dict]:
    resp = client.get(_join_url(base, f"/api/jobs/{job_id}"), timeout=10)
    if resp.status_code >= 400:
        print(f"Failed to fetch job: HTTP {resp.status_code}")
        return None
    return resp.json().get("data") or {}


def _poll_job(client: httpx.Client, base: str, job_id: str, timeout_s: int, interval_s: float) -> Optional[dict]:
    start = time.time()
    last_status = None
    while time.time() - start < timeout_s:
        data = _fetch_job(client, base, job_id)
        if data is None:
            return None
        if data.get("status") != last_status:
            last_status = data.get("status")
            print(f"Status: {last_status}")
        if last_status in TERMINAL:
            return data
        time.sleep(interval_s)
    print("Timed out waiting for the job to finish.")
    return None


def run_submit(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    files = []
    for raw in args.images or []:
        path = Path(raw)
        if not path.is_file():
            print(f"Image not found: {path}")
            return 1
        mime = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        files.append(("images", (path.name, path.read_bytes(), mime)))
    form = {"barcodes": ",".join(args.barcodes or []), "locale": args.locale}
    if args.model:
        form["model"] = args.model
    with httpx.Client() as client:
        resp = client.post(_join_url(base, "/api/jobs"), data=form, files=files or None, timeout=60)
        body = resp.json() if resp.headers.get("content-type", "").startswith("application/json") else {}
        if resp.status_code >= 400 or not body.get("ok"):
            error = body.get("error") or {}
            print(f"Failed to submit job: HTTP {resp.status_code} {error.get('code', '')} {error.get('message', '')}")
            return 1
        job_id = body["jobId"]
        print(f"Submitted job {job_id}")
        if not args.wait:
            return 0
        data = _poll_job(client, base, job_id, args.timeout, args.interval)
        if data is None:
            return 1
        _print_job(data, verbose=args.verbose)
        return 0 if data.get("status") == "done" else 2


def run_status(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        data = _fetch_job(client, base, args.job_id)
    if data is None:
        return 1
    _print_job(data, verbose=args.verbose)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Product identification CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    submit = subparsers.add_parser("submit", help="Submit an identification job")
    submit.add_argument("images", nargs="*", help="Image files to upload")
    submit.add_argument("--barcode", dest="barcodes", action="append", help="Barcode (repeatable)")
    submit.add_argument("--locale", default="de-DE", help="Locale for generated texts")
    submit.add_argument("--model", default=None, help="Model id or alias (mini, nano, standard)")
    submit.add_argument("--wait", action="store_true", help="Poll until the job finishes")
    submit.add_argument("--timeout", type=int, default=600, help="Max wait seconds")
    submit.add_argument("--interval", type=float, default=2.0, help="Poll interval seconds")
    submit.add_argument("-v", "--verbose", action="store_true", help="Print the full result")

    status = subparsers.add_parser("status", help="Show job status")
    status.add_argument("job_id", help="Job id returned by submit")
    status.add_argument("-v", "--verbose", action="store_true", help="Print the full result")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "submit":
        return run_submit(args)
    if args.command == "status":
        return run_status(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
