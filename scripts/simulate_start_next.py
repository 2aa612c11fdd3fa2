"""Hammer start-next from several drawers at once and check nobody shares an order.

Run against a server seeded by ``scripts/init_db.py``::

    python scripts/simulate_start_next.py 2 3 4
"""
import random, sys, time, threading, requests
from collections import Counter

BASE = "http://127.0.0.1:5000/api/workflow"

WORKERS = [int(a) for a in sys.argv[1:]] or [2, 3, 4]
claimed = []
lock = threading.Lock()

def worker_loop(user_id):
    headers = {"X-User-Id": str(user_id)}
    for _ in range(5):
        r = requests.post(f"{BASE}/start-next", headers=headers, timeout=5)
        body = r.json()
        print(user_id, r.status_code, body.get("outcome"), (body.get("order") or {}).get("id"))
        order = body.get("order")
        if order:
            with lock:
                claimed.append(order["id"])
            time.sleep(random.uniform(0.1, 0.4))
            requests.post(f"{BASE}/orders/{order['id']}/submit", headers=headers,
                          json={"comments": "simulated"}, timeout=5)

threads = [threading.Thread(target=worker_loop, args=(w,)) for w in WORKERS]
[t.start() for t in threads]
[t.join() for t in threads]

dupes = [oid for oid, n in Counter(claimed).items() if n > 1]
print(f"{len(claimed)} claims, duplicates: {dupes or 'none'}")
