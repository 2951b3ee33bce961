# read_simulator/generator.py
import os
import random
import time
from typing import List, Optional

import requests
from faker import Faker

# Configuration
TARGET_URL = os.getenv("TARGET_URL", "http://aggregator:8080")
ARTICLE_IDS = [a for a in os.getenv("ARTICLE_IDS", "").split(",") if a]
READ_COUNT = int(os.getenv("READ_COUNT", "1000"))  # Number of reads to send
DELAY = float(os.getenv("DELAY", "0.1"))  # Delay between requests (seconds)
GUEST_RATIO = float(os.getenv("GUEST_RATIO", "0.2"))
REPEAT_RATIO = float(os.getenv("REPEAT_RATIO", "0.3"))

fake = Faker()


def generate_read(article_ids: List[str], readers: List[str], guest_ratio: float = GUEST_RATIO) -> dict:
    """Pick an article and a reader; reader_id None is a guest read."""
    return {
        "article_id": random.choice(article_ids),
        "reader_id": None if random.random() < guest_ratio else random.choice(readers),
        "ip": fake.ipv4(),
    }


def send_read(read: dict, is_repeat: bool = False, base_url: str = TARGET_URL) -> Optional[dict]:
    """GET the article the way a browser would; returns the JSON body."""
    headers = {"X-Forwarded-For": read["ip"]}
    if read["reader_id"]:
        headers["X-Reader-Id"] = read["reader_id"]
    tag = "[REPEAT]" if is_repeat else "[NEW]"
    try:
        response = requests.get(f"{base_url}/articles/{read['article_id']}", headers=headers, timeout=5)
    except requests.RequestException as e:
        print(f"[ERROR] Failed to read {read['article_id']}: {e}")
        return None

    if response.status_code != 200:
        print(f"{tag} {read['article_id']} | Status: {response.status_code}")
        return None
    body = response.json()
    print(f"{tag} {read['article_id']} by {read['reader_id'] or 'guest'} | tracked={body['read_tracked']}")
    return body


def main():
    if not ARTICLE_IDS:
        raise SystemExit("Set ARTICLE_IDS to a comma-separated list of article ids")
    print(f"Starting read simulator... Target: {TARGET_URL}")
    readers = [fake.uuid4() for _ in range(50)]
    # Give the aggregator a moment to come up
    time.sleep(5)

    for _ in range(READ_COUNT):
        read = generate_read(ARTICLE_IDS, readers)
        send_read(read)

        # Same reader re-opening the article: must be absorbed by dedup
        if random.random() < REPEAT_RATIO:
            time.sleep(0.05)
            send_read(read, is_repeat=True)

        time.sleep(DELAY)

    print("Read simulator finished.")


if __name__ == "__main__":
    main()
