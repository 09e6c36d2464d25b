"""
支付渠道密钥加密/解密工具
使用 AES-256-GCM（认证加密），主密钥取自环境变量 ENCRYPTION_MASTER_KEY（64位十六进制）
密文格式：ivHex:authTagHex:cipherHex
"""
import binascii
import logging
import re
from typing import Optional

from Crypto.Cipher import AES
from Crypto.Random import get_random_bytes

from config import ENCRYPTION_MASTER_KEY

logger = logging.getLogger(__name__)

IV_SIZE = 16
KEY_SIZE = 32
HEX_PATTERN = re.compile(r'^[0-9a-fA-F]+$')


class EncryptionError(Exception):
    pass


def _load_key(master_key: Optional[str]) -> bytes:
    key_hex = master_key or ENCRYPTION_MASTER_KEY
    if not key_hex:
        logger.error("加密主密钥未配置，请检查 .env 文件")
        raise EncryptionError("加密主密钥未配置")
    try:
        key = bytes.fromhex(key_hex)
    except ValueError as e:
        raise EncryptionError("加密主密钥不是有效的十六进制字符串") from e
    if len(key) != KEY_SIZE:
        raise EncryptionError(f"加密主密钥长度应为{KEY_SIZE}字节")
    return key


def encrypt(plaintext: str, master_key: Optional[str] = None) -> str:
    """
    加密明文

    Args:
        plaintext: 明文（如渠道 secret key）
        master_key: 十六进制主密钥，缺省读取配置

    Returns:
        ivHex:authTagHex:cipherHex
    """
    key = _load_key(master_key)
    iv = get_random_bytes(IV_SIZE)
    cipher = AES.new(key, AES.MODE_GCM, nonce=iv)
    ciphertext, tag = cipher.encrypt_and_digest(plaintext.encode('utf-8'))
    return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"


def decrypt(token: str, master_key: Optional[str] = None) -> str:
    key = _load_key(master_key)

    parts = token.split(':') if isinstance(token, str) else []
    if len(parts) != 3 or not parts[0] or not parts[1]:
        raise EncryptionError("加密文本格式不正确")
    iv_hex, tag_hex, cipher_hex = parts

    try:
        iv = bytes.fromhex(iv_hex)
        tag = bytes.fromhex(tag_hex)
        ciphertext = bytes.fromhex(cipher_hex)
        cipher = AES.new(key, AES.MODE_GCM, nonce=iv)
        plaintext = cipher.decrypt_and_verify(ciphertext, tag)
        return plaintext.decode('utf-8')
    except (ValueError, binascii.Error, UnicodeDecodeError) as e:
        logger.error(f"解密数据失败: {e}")
        raise EncryptionError("解密操作失败") from e


def is_encrypted(value: Optional[str]) -> bool:
    if not value or not isinstance(value, str):
        return False
    parts = value.split(':')
    if len(parts) != 3:
        return False
    return all(HEX_PATTERN.match(p) for p in parts)
