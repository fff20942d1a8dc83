"""Ask a running gateway to settle one PENDING payment now.

Operational escape hatch for a single stuck payment. The gateway waits on its
own provider limiter, so this never pushes the provider past its cap.
"""

import argparse

import httpx


def main() -> None:
    """CLI entrypoint."""

    parser = argparse.ArgumentParser(description="Settle one PENDING payment through the gateway.")
    parser.add_argument("payment_id")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--timeout-seconds", type=float, default=10.0)
    args = parser.parse_args()

    try:
        resp = httpx.post(
            f"{args.base_url}/api/v1/payments/{args.payment_id}/settle",
            params={"timeout_seconds": args.timeout_seconds},
            timeout=args.timeout_seconds + 30.0,
        )
    except httpx.HTTPError as exc:
        print(f"Gateway unreachable: {exc}")
        raise SystemExit(3)

    body = resp.json()
    if resp.status_code != 200:
        print(f"{resp.status_code} {body.get('error_code', '')}: {body.get('message', body)}")
        raise SystemExit(1 if resp.status_code == 429 else 2)
    print(f"payment_id={body['payment_id']} status={body['status']} retry_count={body['retry_count']}")


if __name__ == "__main__":
    main()
