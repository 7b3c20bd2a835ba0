#!/usr/bin/env python3
from setuptools import setup
import os

# Read version from parsum.py

def get_version():
    with open('parsum.py', 'r') as f:
        content = f.read()

        # Extract MAJOR, MINOR, PATCH for PEP 440 compliant version
        for line in content.splitlines():
            if line.strip().startswith('MAJOR, MINOR, PATCH ='):
                # Extract the numbers from "MAJOR, MINOR, PATCH = 1, 0, 2"
                parts = line.split('=')[1].strip().split(',')
                try:
                    major = int(parts[0].strip())
                    minor = int(parts[1].strip())
                    patch = int(parts[2].strip())
                    return f"{major}.{minor}.{patch}"
                except (ValueError, IndexError):
                    break

    return '1.0.0'

# Read long description from README

def get_long_description():
    if os.path.exists('README.md'):
        with open('README.md', 'r', encoding='utf-8') as f:
            return f.read()
    return 'Print or check file checksums in sha256sum and BSD tag formats, with recursive traversal and parallel workers.'

setup(
    name="parsum",
    version=get_version(),
    description="Print or check file checksums in sha256sum and BSD tag formats, with recursive traversal and parallel workers",
    long_description=get_long_description(),
    long_description_content_type="text/markdown",
    author="Dustin Darcy",
    author_email="6962246+djdarcy@users.noreply.github.com",
    py_modules=["parsum"],
    entry_points={
        "console_scripts": [
            "parsum=parsum:main",
        ],
    },
    install_requires=[
        # ANSI status colors on Windows consoles
        'colorama>=0.4.6',
    ],
    extras_require={
        'dev': [
            'pytest>=7.0.0',
            'black>=23.0.0',
            'flake8>=6.0.0',
            'mypy>=1.0.0',
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: GNU General Public License v3 (GPLv3)",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: System :: Archiving",
        "Topic :: System :: Systems Administration",
        "Topic :: Utilities",
    ],
    keywords="checksum hash verification sha256 sha256sum parallel recursive",
    python_requires=">=3.8",
)
