"""MITRE ATT&CK mapping for authguard threat types."""

from typing import Dict, Optional

# Threat type value -> technique info
THREAT_MITRE_MAPPING: Dict[str, Dict[str, str]] = {
    "brute_force": {"technique": "T1110", "name": "Brute Force"},
    "suspicious_login": {"technique": "T1078", "name": "Valid Accounts"},
    "account_takeover": {"technique": "T1078", "name": "Valid Accounts"},
    "malicious_request": {"technique": "T1190", "name": "Exploit Public-Facing Application"},
    "data_exfiltration": {"technique": "T1567", "name": "Exfiltration Over Web Service"},
    "privilege_escalation": {"technique": "T1068", "name": "Exploitation for Privilege Escalation"},
    "session_hijacking": {"technique": "T1539", "name": "Steal Web Session Cookie"},
    "phishing_attempt": {"technique": "T1566", "name": "Phishing"},
    "malware_detected": {"technique": "T1204", "name": "User Execution"},
    "ddos_attack": {"technique": "T1498", "name": "Network Denial of Service"},
    "sql_injection": {"technique": "T1190", "name": "Exploit Public-Facing Application"},
    "xss_attack": {"technique": "T1189", "name": "Drive-by Compromise"},
    "csrf_attack": {"technique": "T1185", "name": "Browser Session Hijacking"},
    "unusual_activity": {"technique": "T1078", "name": "Valid Accounts"},
    "geographic_anomaly": {"technique": "T1078", "name": "Valid Accounts"},
    "device_anomaly": {"technique": "T1078", "name": "Valid Accounts"},
    "behavioral_anomaly": {"technique": "T1078", "name": "Valid Accounts"},
}


def map_threat_to_mitre(threat_type: str) -> Optional[Dict[str, str]]:
    """
    Map a threat type to its MITRE ATT&CK technique.

    Args:
        threat_type: ThreatType value (e.g. "brute_force").

    Returns:
        Dictionary with 'technique' and 'name' keys, or None if not mapped.
    """
    return THREAT_MITRE_MAPPING.get(str(threat_type))


def get_mitre_technique(threat_type: str) -> str:
    """Technique ID for a threat type, or "N/A"."""
    info = map_threat_to_mitre(threat_type)
    if info:
        return info["technique"]
    return "N/A"
