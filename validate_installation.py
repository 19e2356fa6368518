#!/usr/bin/env python3
"""
Validation script for Device Group Sync.

Checks that the dependencies are installed and that the engine can filter,
resolve and plan a sync without touching a real directory.
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
        ("ldap3", "ldap3"),
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
        "device_group_sync.config",
        "device_group_sync.main",
        "device_group_sync.versions",
        "device_group_sync.expander",
        "device_group_sync.device_filter",
        "device_group_sync.identity",
        "device_group_sync.resolver",
        "device_group_sync.synchronizer",
        "device_group_sync.notifications",
        "device_group_sync.retry",
        "device_group_sync.directories.graph",
        "device_group_sync.directories.ldap_directory",
    ]

    all_ok = True
    for module in modules:
        ok, message = check_dependency(module, module)
        print(f"  {message}")
        if not ok:
            all_ok = False

    return all_ok


def validate_functionality():
    """Validate key functionality."""
    print("\n=== Functionality Validation ===")

    try:
        from device_group_sync.versions import compare_versions
        assert compare_versions("17.5.1", "18.0", "lt")
        assert compare_versions("10.0.22631", "10.0.22621", "ge")
        print("  ✓ Version comparison")

        from device_group_sync.device_filter import DeviceFilter, build_filters
        from device_group_sync.models import ManagedDevice, OperatingSystem
        device_filter = DeviceFilter(build_filters({'iOS': {'min_version': '18.0'}}))
        assert device_filter.matches(ManagedDevice('1', 'iPhone', OperatingSystem.IOS, '17.5.1'))
        assert not device_filter.matches(ManagedDevice('2', 'PC', OperatingSystem.WINDOWS, '10.0.19045'))
        print("  ✓ Device filtering")

        from device_group_sync.identity import chunked
        assert [len(batch) for batch in chunked([str(i) for i in range(37)], 15)] == [15, 15, 7]
        print("  ✓ Identity batching")

        from device_group_sync.directories.graph import GraphDirectory
        GraphDirectory({'tenant_id': 't', 'client_id': 'c', 'client_secret': 's'})
        print("  ✓ Graph backend instantiation")

        from device_group_sync.retry import retry_call
        retry_call(lambda: "test", max_attempts=1, delay=0, exceptions=())
        print("  ✓ Retry mechanism")

        return True

    except Exception as e:
        print(f"  ✗ Functionality test failed: {e}")
        return False


def validate_cli():
    """Validate command-line interface."""
    print("\n=== CLI Validation ===")

    try:
        import subprocess

        result = subprocess.run([sys.executable, "-m", "device_group_sync", "--help"],
                                capture_output=True, text=True)
        if result.returncode == 0 and '--source-group' in result.stdout:
            print("  ✓ Help command working")
            return True

        print("  ✗ Help command failed")
        return False

    except Exception as e:
        print(f"  ✗ CLI validation failed: {e}")
        return False


def main():
    """Run all validations."""
    print("Device Group Sync - Installation Validation")
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
        print("✓ Device Group Sync is ready for use")
        print("\nNext steps:")
        print("  1. Copy config.example.yaml to config.yaml and fill in your directory settings")
        print("  2. Test with: python -m device_group_sync --health-check")
        print("  3. Preview with: python -m device_group_sync --dry-run")
        print("  4. Run sync: python -m device_group_sync")
        return 0
    else:
        print("✗ Some validations failed!")
        print("Please resolve the issues above before using the application.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
