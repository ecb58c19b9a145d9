#!/usr/bin/env python3
"""
Validation script for the CRM AD Sync application.

This script checks that dependencies are installed, that the package modules
import, and that the directory response decoder and the update payload builder
behave as expected on a sample user.
"""

import sys
import importlib


def check_dependency(package_name, import_name=None):
    """Check if a package/module can be imported."""
    if import_name is None:
        import_name = package_name

    try:
        importlib.import_module(import_name)
        return True, f"✓ {package_name} available"
    except ImportError as e:
        return False, f"✗ {package_name} missing: {e}"


def validate_dependencies():
    """Validate all required dependencies."""
    print("=== Dependency Validation ===")

    dependencies = [
        ("PyYAML", "yaml"),
        ("cryptography", "cryptography"),
    ]

    test_dependencies = [
        ("pytest", "pytest"),
        ("pytest-mock", "pytest_mock"),
    ]

    all_ok = True
    for pkg_name, import_name in dependencies:
        ok, message = check_dependency(pkg_name, import_name)
        print(f"  {message}")
        if not ok:
            all_ok = False

    print("\n  Test dependencies:")
    for pkg_name, import_name in test_dependencies:
        ok, message = check_dependency(pkg_name, import_name)
        print(f"  {message}")

    return all_ok


def validate_core_modules():
    """Validate core application modules."""
    print("\n=== Core Module Validation ===")

    modules = [
        "crm_ad_sync.config",
        "crm_ad_sync.logging_setup",
        "crm_ad_sync.http_client",
        "crm_ad_sync.users",
        "crm_ad_sync.directory",
        "crm_ad_sync.updater",
        "crm_ad_sync.notifications",
        "crm_ad_sync.main",
    ]

    all_ok = True
    for module in modules:
        ok, message = check_dependency(module, module)
        print(f"  {message}")
        if not ok:
            all_ok = False

    return all_ok


def validate_functionality():
    """Validate the offline parts of the pipeline on a sample response."""
    print("\n=== Functionality Validation ===")

    sample_envelope = (
        '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/"><soap:Body>'
        '<RetrieveADUserPropertiesResponse xmlns="http://schemas.microsoft.com/crm/2009/WebServices">'
        '<RetrieveADUserPropertiesResult>&lt;systemuser&gt;&lt;firstname&gt;John&lt;/firstname&gt;'
        '&lt;internalemailaddress&gt;jdoe@contoso.com&lt;/internalemailaddress&gt;&lt;/systemuser&gt;'
        '</RetrieveADUserPropertiesResult></RetrieveADUserPropertiesResponse></soap:Body></soap:Envelope>'
    )

    try:
        from crm_ad_sync.directory import extract_result_document, parse_directory_record
        record = parse_directory_record(extract_result_document(sample_envelope))
        if record != {'firstname': 'John', 'internalemailaddress': 'jdoe@contoso.com'}:
            raise ValueError(f"unexpected directory record {record}")
        print("  ✓ Directory response decoding")

        from crm_ad_sync.updater import build_update_payload, serialize_payload
        payload = serialize_payload(build_update_payload(record))
        if payload != '{"firstname":"John"}':
            raise ValueError(f"unexpected payload {payload}")
        print("  ✓ Update payload (email excluded)")

        from crm_ad_sync.users import build_user_query_path
        build_user_query_path('/api/data/v8.2')
        print("  ✓ User query")

        return True

    except Exception as e:
        print(f"  ✗ Functionality test failed: {e}")
        return False


def validate_cli():
    """Validate command-line interface."""
    print("\n=== CLI Validation ===")

    try:
        import subprocess

        result = subprocess.run([sys.executable, "-m", "crm_ad_sync", "--help"],
                                capture_output=True, text=True)
        if result.returncode == 0:
            print("  ✓ Help command working")
            return True

        print("  ✗ Help command failed")
        return False

    except Exception as e:
        print(f"  ✗ CLI validation failed: {e}")
        return False


def main():
    """Run all validations."""
    print("CRM AD Sync - Installation Validation")
    print("=" * 50)

    all_validations = [
        validate_dependencies(),
        validate_core_modules(),
        validate_functionality(),
        validate_cli(),
    ]

    print("\n=== Summary ===")
    if all(all_validations):
        print("✓ All validations passed!")
        print("✓ CRM AD Sync is ready for use")
        print("\nNext steps:")
        print("  1. Copy config.example.yaml to config.yaml and set the CRM server and credentials")
        print("  2. Test with: python -m crm_ad_sync --health-check")
        print("  3. Preview with: python -m crm_ad_sync --dry-run")
        print("  4. Run sync: python -m crm_ad_sync")
        return 0
    else:
        print("✗ Some validations failed!")
        print("Please resolve the issues above before using the application.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
