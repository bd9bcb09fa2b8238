import os
import subprocess
import sys

pytest_cmd = [
    sys.executable,
    "-m",
    "pytest",
    "apipe.py",
    "test_apipe.py",
    "--verbose",
]

# The doctests call echo, grep, sed and sh, so they only run on Unix.
if os.name != "nt":
    pytest_cmd.append("--doctest-modules")

print("Executing:", " ".join(pytest_cmd))
subprocess.check_call(pytest_cmd)

print("Executing: flake8")
files = ["apipe.py", "test_apipe.py", "ci.py"]
subprocess.check_call(["flake8", "--max-line-length=88"] + files)

print("Executing: black --check")
subprocess.check_call(["black", "--check"] + files)

print("Success!")
