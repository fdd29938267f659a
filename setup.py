from setuptools import setup, find_packages

setup(
    name="ledger-bridge",
    version="1.0.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    include_package_data=True,
    package_data={"ledger_bridge": ["abi/*.json"]},
    install_requires=[
        "web3>=7.0.0",
        "eth-account>=0.13.0",
        "eth-utils>=2.1.0",
        "eth-abi>=4.0.0",
        "hexbytes>=0.3.0",
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        "SQLAlchemy>=2.0.0",
        "fastapi>=0.100.0",
        "uvicorn>=0.23.0",
        "cachetools>=5.0.0",
        "prometheus-client>=0.17.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.23.0",
            "httpx>=0.24.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "ledger-bridge=ledger_bridge.main:main",
        ],
    },
    python_requires=">=3.9",
    author="Script Marketplace Team",
    description="Ledger gateway, gas estimation, transaction monitoring and mirror reconciliation for the script marketplace",
)
