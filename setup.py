from setuptools import setup, find_packages

setup(
    name="asoproxy",
    version="0.1.0",
    packages=find_packages(include=["asogate", "asogate.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.110",
        "uvicorn>=0.29",
        "httpx>=0.27",
        "pydantic>=2.6",
        "pydantic-settings>=2.2",
        "sqlalchemy[asyncio]>=2.0",
        "aiosqlite>=0.20",
        "cryptography>=42.0",
        "PyJWT>=2.8",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "respx>=0.21",
        ],
    },
)
