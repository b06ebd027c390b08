#!/usr/bin/env python3
"""
Test runner script for the guild stats engine
"""
import os
import sys
import subprocess
import argparse
from pathlib import Path

def run_command(command, cwd=None, env=None):
    """Run a shell command and return the result."""
    try:
        result = subprocess.run(
            command,
            shell=True,
            cwd=cwd,
            env=env,
            capture_output=True,
            text=True,
            check=True
        )
        return result.stdout, result.stderr, result.returncode
    except subprocess.CalledProcessError as e:
        print(f"Command failed: {command}")
        print(f"Error: {e.stderr}")
        return e.stdout, e.stderr, e.returncode

def build_test_env():
    """Environment for test runs: testing settings, quiet logs."""
    env = dict(os.environ)
    env.setdefault('STATS_ENV', 'testing')
    env.setdefault('LOG_LEVEL', 'WARNING')
    return env

def run_marked_tests(label, marker):
    """Run the tests carrying one marker."""
    print(f"Running {label.lower()}...")

    cmd = f"python -m pytest tests/ -v -m '{marker}' --tb=short"
    stdout, stderr, returncode = run_command(cmd, env=build_test_env())

    if returncode == 0:
        print(f"✅ {label} passed!")
    else:
        print(f"❌ {label} failed!")
        print(stdout)
        print(stderr)

    return returncode == 0

def run_unit_tests():
    """Run unit tests."""
    return run_marked_tests("Unit tests", "unit")

def run_integration_tests():
    """Run integration tests."""
    return run_marked_tests("Integration tests", "integration")

def run_coverage_report():
    """Run the whole suite with a coverage report."""
    print("Generating coverage report...")

    cmd = "python -m pytest tests/ --cov=guildstats --cov-report=html --cov-report=term-missing"
    stdout, stderr, returncode = run_command(cmd, env=build_test_env())

    if returncode == 0:
        print("✅ Coverage report generated!")
        print("HTML report available at: htmlcov/index.html")
        print(stdout)
    else:
        print("❌ Coverage run failed!")
        print(stdout)
        print(stderr)

    return returncode == 0

def main():
    """Main function."""
    parser = argparse.ArgumentParser(description='Test runner for the guild stats engine')
    parser.add_argument('--unit', action='store_true', help='Run unit tests only')
    parser.add_argument('--integration', action='store_true', help='Run integration tests only')
    parser.add_argument('--coverage', action='store_true', help='Run all tests with coverage')

    args = parser.parse_args()

    # Change to project root directory
    project_root = Path(__file__).parent
    os.chdir(project_root)

    results = []

    if not any([args.unit, args.integration, args.coverage]):
        results.append(("Unit Tests", run_unit_tests()))
        results.append(("Integration Tests", run_integration_tests()))
    else:
        if args.unit:
            results.append(("Unit Tests", run_unit_tests()))
        if args.integration:
            results.append(("Integration Tests", run_integration_tests()))
        if args.coverage:
            results.append(("Coverage", run_coverage_report()))

    # Print summary
    print("\n" + "="*50)
    print("TEST SUMMARY")
    print("="*50)

    all_passed = True
    for test_name, passed in results:
        status = "✅ PASSED" if passed else "❌ FAILED"
        print(f"{test_name:<25} {status}")
        if not passed:
            all_passed = False

    print("\nOverall Result:", "✅ ALL TESTS PASSED" if all_passed else "❌ SOME TESTS FAILED")

    # Exit with appropriate code
    sys.exit(0 if all_passed else 1)

if __name__ == '__main__':
    main()
