#!/usr/bin/env python

from setuptools import setup

long_description = """\

pglink
------

pglink is a Pure-Python client for the PostgreSQL frontend/backend protocol, \
version 3.  It connects over TCP or a Unix domain socket, authenticates with \
a cleartext or MD5 password and drives the extended-query protocol: parse, \
bind, execute, describe and close.  Rows come back as raw text fields, and a \
registry of type converters turns them into Python values and back.

Setting the PGPROFILING environment variable to a file name appends a CSV \
row to that file for each connect, prepare, execute, close and ping, \
recording how long it took and how it turned out."""

setup(
    name="pglink",
    version="0.1.0",
    description="PostgreSQL wire protocol client",
    long_description=long_description,
    author="Mathieu Fenniak",
    license="BSD",
    python_requires=">=3.8",
    install_requires=["portalocker>=2.0", "python-dateutil>=2.8"],
    extras_require={"test": ["pytest", "pytest-mock"]},
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: BSD License",
        "Programming Language :: Python",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: Implementation",
        "Programming Language :: Python :: Implementation :: CPython",
        "Operating System :: POSIX",
        "Topic :: Database :: Front-Ends",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],
    keywords="postgresql protocol",
    packages=("pglink",),
)
