import re
import uuid
from datetime import datetime, timezone
from typing import Optional


def mask_phone(phone: str) -> str:
    """
    Masque un numéro de téléphone en ne laissant que l'indicatif (si présent)
    et les 2 derniers chiffres.
    Format type: +41 79 123 45 67 -> +41 ••• •• 67
    """
    if not phone:
        return ""

    clean_phone = phone.replace(" ", "")

    if len(clean_phone) <= 4:
        return "••••"

    # On essaie de garder l'indicatif (+ suivi de 1-3 chiffres)
    match = re.match(r"^(\+\d{1,3})", clean_phone)
    prefix = match.group(1) if match else ""

    suffix = clean_phone[-2:]
    return f"{prefix} ••• •• {suffix}" if prefix else f"••• •• {suffix}"


def new_id(prefix: str) -> str:
    """Identifiant opaque : ntf_3f2a9c81d4e0"""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo peut renvoyer des dates naïves : on les considère UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def dedupe(values) -> list:
    """Supprime les doublons en conservant l'ordre d'origine."""
    seen = set()
    result = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            result.append(value)
    return result
