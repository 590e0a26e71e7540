from setuptools import setup, find_packages

setup(
    name="kiosk-screen-agent",
    version="0.1.0",
    description="Pairing, heartbeat and self-healing agent for unattended display kiosks",
    author="Matt Skillman",
    packages=find_packages(include=["src", "src.*"]),
    python_requires=">=3.10",
    install_requires=[
        "PyYAML>=6.0",
        "requests>=2.31.0",
        "websockets>=12.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "black>=23.0.0",
            "pylint>=2.17.0",
        ]
    },
    entry_points={
        "console_scripts": [
            "kiosk-screen=src.screen.controller:main",
        ]
    },
)
