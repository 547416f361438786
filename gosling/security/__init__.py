from gosling.security.scanner import DEFAULT_PATTERNS, Finding, InjectionPattern, ScanResult, SecurityScanner

__all__ = ["DEFAULT_PATTERNS", "Finding", "InjectionPattern", "ScanResult", "SecurityScanner"]
