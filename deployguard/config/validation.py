#!/usr/bin/env python3
"""
Configuration validation: JSON schema plus cross-reference rules.
"""

import json
from pathlib import Path

import jsonschema

SCHEMA_FILE = Path(__file__).parent.parent / "schemas" / "deployment-config-schema.json"


def load_schema():
    with open(SCHEMA_FILE, 'r') as f:
        return json.load(f)


def validate_against_schema(config):
    """
    Validate config against the JSON schema.
    Returns (is_valid, errors_list)
    """
    validator = jsonschema.Draft7Validator(load_schema())
    errors = []
    for error in sorted(validator.iter_errors(config), key=lambda e: list(e.path)):
        error_path = ' -> '.join(str(p) for p in error.path) if error.path else 'root'
        errors.append(f"Schema validation failed at '{error_path}': {error.message}")
    return len(errors) == 0, errors


def check_references(config):
    """Rules the schema cannot express. Returns list of errors."""
    errors = []
    names = [component['name'] for component in config.get('components', [])]

    seen = set()
    for name in names:
        if name in seen:
            errors.append(f"Duplicate component name: {name}")
        seen.add(name)

    for env_name, env in config.get('environments', {}).items():
        for name in env.get('components', []):
            if name not in seen:
                errors.append(f"Environment '{env_name}' references unknown component '{name}'")

    backend = config.get('deployment', {}).get('storage_backend', 'local')
    if backend == 's3' and not config.get('s3', {}).get('bucket_name'):
        errors.append("storage_backend 's3' requires s3.bucket_name")

    return errors


def validate_config(config):
    is_valid, errors = validate_against_schema(config)
    if not is_valid:
        return False, errors
    errors = check_references(config)
    return len(errors) == 0, errors
