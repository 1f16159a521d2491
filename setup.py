"""
Setup script pour installer RubberTap
(serveur d'autorité + daemon de synchronisation des appareils terrain)
"""

from setuptools import setup

setup(
    name="rubbertap",
    version="1.0",
    description="Collecte terrain des saignées d'hévéas, hors ligne, avec synchronisation",
    python_requires=">=3.9",
    py_modules=[
        "app",
        "config",
        "connectivity",
        "field_entry",
        "local_store",
        "run",
        "sync_api",
        "sync_client",
        "sync_daemon",
        "sync_protocol",
    ],
    install_requires=[
        "Flask>=2.3",
        "Flask-SQLAlchemy>=3.0",
        "SQLAlchemy>=2.0",
        "requests>=2.28",
        "waitress>=2.1",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "rubbertap-server=run:main",
            "rubbertap-sync=sync_daemon:main",
        ],
    },
)
