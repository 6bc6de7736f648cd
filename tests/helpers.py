import hashlib

OWNER = "user-1"
OTHER_OWNER = "user-2"


def md5(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()
