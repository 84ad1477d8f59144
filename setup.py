#!/usr/bin/env python

# SPDX-FileCopyrightText: 2021 Rose Davidson <rose@metaclassical.com>
#
# SPDX-License-Identifier: GPL-3.0-or-later

# -*- encoding: utf-8 -*-

from setuptools import find_packages
from setuptools import setup

setup(
    name="irrelay",
    version="0.1.0",
    license="GPL-3.0-or-later",
    description="Relays lircd key events to local clients, turning repeat counts into NEW and HOLD presses",
    author="Rose Davidson",
    author_email="rose@metaclassical.com",
    packages=find_packages("src"),
    package_dir={"": "src"},
    include_package_data=True,
    zip_safe=False,
    classifiers=[
        # complete classifier list: http://pypi.python.org/pypi?%3Aaction=list_classifiers
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: GNU General Public License v3 or later (GPLv3+)",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3 :: Only",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: Implementation :: CPython",
        "Topic :: Home Automation",
        "Topic :: System :: Hardware",
    ],
    keywords=[
        "lirc",
        "infrared",
        "remote",
    ],
    python_requires=">=3.10",
    install_requires=[
        "cattrs>=22.1.0",
        "msgspec",
        "trio>=0.22.0",
        "trio-util>=0.7.0",
        "tricycle>=0.2.1",
    ],
    extras_require={
        "test": ["pytest>=6.2.4", "pytest-trio>=0.8.0"],
    },
    entry_points={
        "console_scripts": [
            "irrelay = irrelay.app:main",
            "irrelay-listen = irrelay.scripts:listen_cli",
            "irrelay-inject = irrelay.scripts:inject_cli",
        ],
    },
)
