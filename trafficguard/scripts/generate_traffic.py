"""
Synthetic traffic for a running TrafficGuard: a calm baseline phase followed
by a spike, both posted to /v1/decide so the verdicts can be watched live.

    python -m trafficguard.scripts.generate_traffic --spike-rps 40
"""
import argparse, asyncio, random, time
from collections import Counter

import httpx

BROWSER_UA = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0 Safari/537.36"
SCRIPT_UA = "python-requests/2.31"


def make_event(source: str, path: str, ua: str, method: str = "GET") -> dict:
    headers = {"User-Agent": ua}
    if ua == BROWSER_UA:
        headers.update({"Accept-Language": "en-US", "Referer": "https://example.com/", "Cookie": "sid=1"})
    return {
        "event": {
            "source_id": source,
            "path": path,
            "method": method,
            "timestamp": time.time(),
            "size": random.randint(200, 2000),
            "headers": headers,
        }
    }


async def phase(client, url: str, source: str, rps: float, dur_s: float, ua: str, paths: list[str],
                jitter: float = 0.0) -> Counter:
    actions: Counter = Counter()
    t_end = time.time() + dur_s
    while time.time() < t_end:
        body = make_event(source, random.choice(paths), ua)
        try:
            r = await client.post(f"{url}/v1/decide", json=body, timeout=3.0)
            actions[r.json().get("action", "error")] += 1
        except httpx.HTTPError:
            actions["error"] += 1
        j = 1.0
        if jitter > 0.0:
            j *= (1.0 + random.uniform(-jitter, jitter))
        eff_rps = max(rps * j, 0.01)
        await asyncio.sleep(1.0 / eff_rps)
    return actions


async def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--base-url", default="http://127.0.0.1:8000")
    ap.add_argument("--source", default="198.51.100.23")
    ap.add_argument("--baseline-rps", type=float, default=1.0)
    ap.add_argument("--baseline-sec", type=float, default=10.0)
    ap.add_argument("--baseline-jitter", type=float, default=0.5, help="relative jitter, 0.0-1.0")
    ap.add_argument("--spike-rps", type=float, default=30.0)
    ap.add_argument("--spike-sec", type=float, default=5.0)
    args = ap.parse_args()

    calm_paths = ["/", "/products", "/products/42", "/cart"]
    scan_paths = [f"/api/v1/items/{i}" for i in range(50)] + ["/admin", "/.env", "/wp-login.php"]
    async with httpx.AsyncClient() as client:
        base = await phase(client, args.base_url, args.source, args.baseline_rps, args.baseline_sec,
                           BROWSER_UA, calm_paths, jitter=args.baseline_jitter)
        spike = await phase(client, args.base_url, args.source + "-spike", args.spike_rps, args.spike_sec,
                            SCRIPT_UA, scan_paths)
    print("baseline:", dict(base))
    print("spike:   ", dict(spike))


if __name__ == "__main__":
    asyncio.run(main())
