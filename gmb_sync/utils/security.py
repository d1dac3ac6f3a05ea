"""
Utilitaires de sécurité : chiffrement des tokens OAuth Google
⚠️ CRITIQUE : access_token et refresh_token doivent être chiffrés en base

MultiFernet permet la rotation des clés : la clé primaire chiffre,
les anciennes clés (FERNET_OLD_KEYS) ne servent qu'à déchiffrer.
"""
from typing import List, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from ..config import settings


class TokenDecryptionError(Exception):
    """Token illisible avec les clés configurées (clé tournée sans ancienne clé ?)"""
    pass


def get_fernet() -> MultiFernet:
    keys: List[bytes] = []

    if not settings.TOKEN_ENCRYPTION_KEY:
        raise RuntimeError("TOKEN_ENCRYPTION_KEY not configured in .env")
    keys.append(settings.TOKEN_ENCRYPTION_KEY.encode())

    for key in settings.FERNET_OLD_KEYS.split(","):
        key = key.strip()
        if key:
            keys.append(key.encode())

    return MultiFernet([Fernet(k) for k in keys])


def encrypt_token(token: Optional[str]) -> Optional[bytes]:
    """Chiffre un token avant stockage (None reste None)"""
    if not token:
        return None
    return get_fernet().encrypt(token.encode())


def decrypt_token(encrypted_token: Optional[bytes]) -> Optional[str]:
    """
    Déchiffre un token depuis la DB

    Raises:
        TokenDecryptionError: si aucune clé ne sait le déchiffrer
    """
    if not encrypted_token:
        return None
    try:
        return get_fernet().decrypt(bytes(encrypted_token)).decode()
    except InvalidToken as e:
        raise TokenDecryptionError("Stored token cannot be decrypted") from e


def generate_encryption_key() -> str:
    """
    Génère une nouvelle clé Fernet
    À utiliser UNE SEULE FOIS pour créer TOKEN_ENCRYPTION_KEY
    """
    return Fernet.generate_key().decode()


if __name__ == "__main__":
    print("Nouvelle clé de chiffrement Fernet:")
    print(generate_encryption_key())
    print("\nAjoutez cette clé dans .env comme TOKEN_ENCRYPTION_KEY")
