"""Masking helpers so customer emails never reach INFO-level logs in clear."""


def mask_email(email: str | None) -> str:
    """'user@domain.com' -> 'u***@domain.com'."""
    if not email or "@" not in email:
        return "***"
    local, domain = email.rsplit("@", 1)
    if len(local) <= 1:
        return f"{local}***@{domain}"
    return f"{local[0]}***@{domain}"
