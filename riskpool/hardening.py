"""
Risk Pool Validation and Hardening

Input validation, thread-safe counters and state machine invariant checks
shared by the registries and the claim engine.

Security Model:
    - All inputs are untrusted until validated
    - Amounts are integral ledger units, never floats
    - All state mutations are atomic or rolled back
    - Status transitions are checked against an explicit transition table

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from riskpool.errors import (
    InvalidAmount,
    InvalidInput,
    InvariantViolation,
    ValidationErrors,
)


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    errors: List[InvalidInput] = field(default_factory=list)
    sanitized_value: Any = None

    def raise_if_invalid(self) -> None:
        """Raise the single error, or ValidationErrors when there are several."""
        if self.is_valid:
            return
        if len(self.errors) == 1:
            raise self.errors[0]
        raise ValidationErrors(self.errors)

    def unwrap(self) -> Any:
        """Return the sanitized value or raise."""
        self.raise_if_invalid()
        return self.sanitized_value

    @classmethod
    def success(cls, sanitized_value: Any = None) -> "ValidationResult":
        return cls(is_valid=True, sanitized_value=sanitized_value)

    @classmethod
    def failure(cls, errors: List[InvalidInput]) -> "ValidationResult":
        return cls(is_valid=False, errors=errors)


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

class Validators:
    """Collection of input validators."""

    IDENTITY_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9:._-]{0,127}$')
    COVERAGE_TYPE_PATTERN = re.compile(r'^[a-z0-9][a-z0-9_-]{0,63}$')

    MAX_STRING_LENGTH = 4096
    MAX_DESCRIPTION_LENGTH = 500
    EVIDENCE_LENGTH = 32
    MAX_AMOUNT = 10 ** 18

    @classmethod
    def validate_string(
        cls,
        value: Any,
        field_name: str,
        min_length: int = 1,
        max_length: Optional[int] = None,
        pattern: Optional[re.Pattern] = None,
    ) -> ValidationResult:
        """Validate a string value."""
        max_length = max_length or cls.MAX_STRING_LENGTH
        errors: List[InvalidInput] = []

        if not isinstance(value, str):
            errors.append(InvalidInput(field_name, f"Expected string, got {type(value).__name__}", value))
            return ValidationResult.failure(errors)

        # Sanitize: strip whitespace and null bytes
        sanitized = value.strip().replace('\x00', '')

        if len(sanitized) < min_length:
            errors.append(InvalidInput(field_name, f"Too short (min {min_length} chars)", value))

        if len(sanitized) > max_length:
            errors.append(InvalidInput(field_name, f"Too long (max {max_length} chars)", value))

        if pattern and not pattern.match(sanitized):
            errors.append(InvalidInput(field_name, "Does not match required pattern", value))

        if errors:
            return ValidationResult.failure(errors)
        return ValidationResult.success(sanitized)

    @classmethod
    def validate_identity(cls, value: Any, field_name: str = "identity") -> ValidationResult:
        """Validate a participant identity (principal)."""
        return cls.validate_string(
            value, field_name,
            min_length=1, max_length=128,
            pattern=cls.IDENTITY_PATTERN,
        )

    @classmethod
    def validate_coverage_type(cls, value: Any) -> ValidationResult:
        return cls.validate_string(
            value, "coverage_type",
            min_length=1, max_length=64,
            pattern=cls.COVERAGE_TYPE_PATTERN,
        )

    @classmethod
    def validate_amount(
        cls,
        value: Any,
        field_name: str = "amount",
        min_value: int = 1,
        max_value: Optional[int] = None,
    ) -> ValidationResult:
        """Validate an integral ledger amount."""
        max_value = max_value if max_value is not None else cls.MAX_AMOUNT

        # bool is an int subclass; reject it explicitly
        if isinstance(value, bool) or not isinstance(value, int):
            return ValidationResult.failure([
                InvalidAmount(field_name, f"Expected integer, got {type(value).__name__}", value)
            ])

        errors: List[InvalidInput] = []
        if value < min_value:
            errors.append(InvalidAmount(field_name, f"Below minimum ({min_value})", value))
        if value > max_value:
            errors.append(InvalidAmount(field_name, f"Exceeds maximum ({max_value})", value))

        if errors:
            return ValidationResult.failure(errors)
        return ValidationResult.success(value)

    @classmethod
    def validate_evidence(cls, value: Any, field_name: str = "evidence") -> ValidationResult:
        """Validate a fixed-width evidence fingerprint.

        Accepts raw bytes or a hex string. None maps to the all-zero
        "no evidence" fingerprint.
        """
        if value is None:
            return ValidationResult.success(bytes(cls.EVIDENCE_LENGTH))

        if isinstance(value, str):
            try:
                value = bytes.fromhex(value.removeprefix("0x"))
            except ValueError:
                return ValidationResult.failure([
                    InvalidInput(field_name, "Invalid hex string", value)
                ])

        if not isinstance(value, (bytes, bytearray)):
            return ValidationResult.failure([
                InvalidInput(field_name, f"Expected bytes, got {type(value).__name__}", value)
            ])

        if len(value) != cls.EVIDENCE_LENGTH:
            return ValidationResult.failure([
                InvalidInput(field_name, f"Must be exactly {cls.EVIDENCE_LENGTH} bytes", value)
            ])

        return ValidationResult.success(bytes(value))

    @classmethod
    def validate_rate_bps(cls, value: Any, max_bps: int = 10000) -> ValidationResult:
        """Validate a basis-point rate."""
        if isinstance(value, bool) or not isinstance(value, int):
            return ValidationResult.failure([
                InvalidInput("premium_rate_bps", f"Expected integer, got {type(value).__name__}", value)
            ])
        if not 0 <= value <= max_bps:
            return ValidationResult.failure([
                InvalidInput("premium_rate_bps", f"Must be within 0..{max_bps}", value)
            ])
        return ValidationResult.success(value)


# =============================================================================
# THREAD SAFETY
# =============================================================================

class AtomicCounter:
    """Thread-safe counter."""

    def __init__(self, initial: int = 0):
        self._value = initial
        self._lock = threading.Lock()

    def increment(self, delta: int = 1) -> int:
        """Atomically increment and return new value."""
        with self._lock:
            self._value += delta
            return self._value

    def get(self) -> int:
        """Get current value."""
        with self._lock:
            return self._value

    def reset(self, value: int = 0) -> None:
        """Atomically reset the counter to the given value."""
        with self._lock:
            self._value = value


# =============================================================================
# STATE MACHINE INVARIANTS
# =============================================================================

class InvariantChecker:
    """Enforces state machine invariants."""

    @staticmethod
    def check_state_transition(
        current_state: Enum,
        target_state: Enum,
        valid_transitions: Dict[Enum, Set[Enum]],
    ) -> None:
        """Verify state transition is valid."""
        valid_targets = valid_transitions.get(current_state, set())
        if target_state not in valid_targets:
            raise InvariantViolation(
                f"Invalid state transition: {current_state.value} -> {target_state.value}. "
                f"Valid targets: {sorted(s.value for s in valid_targets)}"
            )

    @staticmethod
    def check_monotonic_increase(
        field_name: str,
        old_value: int,
        new_value: int,
    ) -> None:
        """Ensure value only increases."""
        if new_value < old_value:
            raise InvariantViolation(
                f"{field_name} must be monotonically increasing: "
                f"cannot go from {old_value} to {new_value}"
            )

    @staticmethod
    def check_non_negative(field_name: str, value: int) -> None:
        """Ensure value is non-negative."""
        if value < 0:
            raise InvariantViolation(f"{field_name} cannot be negative: {value}")
