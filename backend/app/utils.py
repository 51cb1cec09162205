import random
import string
import time

_ID_ALPHABET = string.ascii_lowercase + string.digits


def now_ms() -> int:
    return int(time.time() * 1000)


def new_player_id(ts: int | None = None) -> str:
    suffix = "".join(random.choices(_ID_ALPHABET, k=5))
    return f"p-{ts if ts is not None else now_ms()}-{suffix}"
