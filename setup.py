#!/usr/bin/env python3
"""
Setup script for the lobby secure channel
"""

from setuptools import setup, find_packages

setup(
    name="lobby-secure-channel",
    version="0.1.0",
    description="Device pairing and secure messaging over a best-effort pub/sub transport",
    packages=find_packages(include=["shared", "shared.*", "lobby", "lobby.*", "relay", "relay.*"]),
    install_requires=[
        "websockets>=15.0",
        "cryptography>=43.0.1",
        "typer>=0.12.3",
        "rich>=13.9.2",
        "aioconsole>=0.8.1",
        "PyYAML>=6.0.1",
    ],
    extras_require={
        "test": [
            "pytest>=8.4.2",
            "pytest-asyncio>=1.2.0",
        ],
    },
    python_requires=">=3.10",
    entry_points={
        'console_scripts': [
            'lobby=lobby.cli:main',
            'lobby-relay=relay.server:main',
        ],
    },
)
