from setuptools import setup, find_packages

setup(
    name="libra-monitor",
    version="0.1.0",
    description="Load-cell container monitor logging refill, serving and offline events",
    packages=find_packages(include=["libra", "libra.*"]),
    python_requires=">=3.9",
    install_requires=[
        "PyYAML>=6.0",
        "requests>=2.28",
    ],
    extras_require={
        # Phidget bridge boards need libphidget22 installed system-wide
        "phidget": ["Phidget22"],
        "hx711": ["lgpio"],
        "test": ["pytest>=7"],
    },
    entry_points={
        "console_scripts": [
            "libra=libra.main:main"
        ]
    },
)
