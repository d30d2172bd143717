"""Open Badges credential issuance, verification and revocation."""
