import hashlib

SUPPORTED_ALGORITHMS = ("md5", "sha1", "sha256")


def new_hasher(algorithm: str):
    alg = algorithm.lower()
    if alg not in SUPPORTED_ALGORITHMS:
        raise ValueError(f"Unsupported checksum algorithm: {algorithm}")
    return hashlib.new(alg)


def compute_checksum(data: bytes, algorithm: str = "md5") -> str:
    h = new_hasher(algorithm)
    h.update(data)
    return h.hexdigest()


def checksums_match(expected: str, actual: str) -> bool:
    return expected.strip().lower() == actual.strip().lower()
