"""
Backend Scripts Module

Operator utilities.

Available scripts:
    - seed_data.py: Seeds a demo crisis-response playbook and scenario
    - validate_playbook.py: Validates a playbook JSON document offline

Usage:
    python -m scripts.seed_data
    python -m scripts.validate_playbook path/to/playbook.json
"""
