"""Credential issuance and encrypted export."""
