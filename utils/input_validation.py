"""
Input Validation Utilities
Validation and sanitization for bank details, addresses and dispute evidence
"""

import os
import re
import logging
from typing import Optional, Tuple

import filetype

from config import Config
from utils.exception_handler import ValidationError

logger = logging.getLogger(__name__)


class InputValidator:
    """Comprehensive input validation"""

    IFSC_PATTERN = re.compile(r"^[A-Z]{4}0[A-Z0-9]{6}$")
    ACCOUNT_NUMBER_PATTERN = re.compile(r"^[0-9]{9,18}$")
    HOLDER_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z .'-]{1,99}$")

    ALLOWED_IMAGE_TYPES = {
        "image/jpeg": ".jpg",
        "image/png": ".png",
        "image/gif": ".gif",
        "image/webp": ".webp",
    }

    @classmethod
    def validate_ifsc(cls, ifsc: Optional[str]) -> str:
        """Uppercase then validate an Indian IFSC code"""
        if not ifsc:
            raise ValidationError("IFSC code is required", [{"field": "ifscCode", "message": "required"}])
        normalized = ifsc.strip().upper()
        if not cls.IFSC_PATTERN.match(normalized):
            raise ValidationError(
                "Invalid IFSC code format",
                [{"field": "ifscCode", "message": "must match AAAA0XXXXXX"}],
            )
        return normalized

    @classmethod
    def validate_account_number(cls, account_number: Optional[str]) -> str:
        if not account_number:
            raise ValidationError("Account number is required", [{"field": "accountNumber", "message": "required"}])
        cleaned = account_number.strip().replace(" ", "")
        if not cls.ACCOUNT_NUMBER_PATTERN.match(cleaned):
            raise ValidationError(
                "Account number must be 9-18 digits",
                [{"field": "accountNumber", "message": "must be 9-18 digits"}],
            )
        return cleaned

    @classmethod
    def validate_holder_name(cls, name: Optional[str]) -> str:
        if not name or not name.strip():
            raise ValidationError(
                "Account holder name is required",
                [{"field": "accountHolderName", "message": "required"}],
            )
        name = " ".join(name.split())
        if not cls.HOLDER_NAME_PATTERN.match(name):
            raise ValidationError(
                "Account holder name contains invalid characters",
                [{"field": "accountHolderName", "message": "letters, spaces and . ' - only"}],
            )
        return name

    @classmethod
    def validate_description(cls, text: Optional[str], max_length: int = 1000, field: str = "reason") -> str:
        if text is None or not text.strip():
            raise ValidationError(f"{field.capitalize()} is required", [{"field": field, "message": "required"}])
        text = text.strip()
        if len(text) > max_length:
            raise ValidationError(
                f"{field.capitalize()} too long (maximum {max_length} characters)",
                [{"field": field, "message": f"max {max_length} characters"}],
            )
        return text

    @classmethod
    def validate_image_upload(cls, content: bytes, content_type: Optional[str]) -> Tuple[str, str]:
        """
        Returns (extension, mime type) for an accepted image.

        The type is detected from the file contents; the declared content type
        must agree with it.
        """
        if content_type not in cls.ALLOWED_IMAGE_TYPES:
            raise ValidationError(
                "Only JPEG, PNG, GIF and WebP images are allowed",
                [{"field": "images", "message": f"unsupported type {content_type}"}],
            )
        detected = filetype.guess(content)
        detected_mime = detected.mime if detected is not None else None
        if detected_mime != content_type:
            logger.warning(f"⚠️ UPLOAD_TYPE_MISMATCH: declared {content_type}, detected {detected_mime}")
            raise ValidationError(
                "File content does not match its image type",
                [{"field": "images", "message": f"content is not {content_type}"}],
            )
        if len(content) > Config.DISPUTE_MAX_IMAGE_BYTES:
            raise ValidationError(
                f"Image exceeds {Config.DISPUTE_MAX_IMAGE_BYTES // (1024 * 1024)}MB limit",
                [{"field": "images", "message": "file too large"}],
            )
        return cls.ALLOWED_IMAGE_TYPES[detected_mime], detected_mime

    @classmethod
    def sanitize_filename(cls, filename: Optional[str]) -> str:
        """Strip path components and unsafe characters from a client filename"""
        if not filename:
            return "upload"
        base = os.path.basename(filename.replace("\\", "/"))
        base = re.sub(r"[^A-Za-z0-9._-]", "_", base)
        return base[:255] or "upload"
