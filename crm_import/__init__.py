"""
CRM Import Pipeline

A data migration toolkit for moving clients, projects, tasks, contacts,
invoices and time entries out of a third-party CRM export into the target CRM.

Supports:
- CSV, XLS and XLSX exports (local or remotely parsed)
- Deterministic column-to-field mapping suggestions and reusable templates
- Rule-driven transformation and validation with classified errors
- Per-entity-type batch commits in foreign-key dependency order
- An operator error queue with single and bulk remediation
"""

__version__ = "0.1.0"
