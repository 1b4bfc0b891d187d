from __future__ import annotations


class CalibrationError(RuntimeError):
    pass


class BaselineNotFoundError(CalibrationError):
    pass


class DuplicateRuleSetError(CalibrationError):
    pass


class NoViableCandidateError(CalibrationError):
    pass


class ModelNotPreparedError(CalibrationError):
    pass


class RuleSetNotFoundError(CalibrationError):
    pass
