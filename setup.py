#!/usr/bin/env python

"""
crumbtrail - request-scoped error tracking for Python web applications
=====================================================================

**crumbtrail captures unhandled request exceptions** together with the
user, request and session context of the request and the breadcrumbs that
led up to the failure.
"""

import os
from setuptools import setup, find_packages

here = os.path.abspath(os.path.dirname(__file__))


def get_file_text(file_name):
    with open(os.path.join(here, file_name)) as in_file:
        return in_file.read()


setup(
    name="crumbtrail",
    version="1.0.0",
    author="crumbtrail contributors",
    description="Request-scoped error tracking with breadcrumbs and redaction",
    long_description=get_file_text("README.md"),
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=("tests", "tests.*")),
    zip_safe=False,
    license="MIT",
    python_requires=">=3.8",
    install_requires=[
        "urllib3>=1.26.11",
        "certifi",
    ],
    extras_require={
        "sqlalchemy": ["sqlalchemy>=1.2"],
        "test": ["pytest", "werkzeug", "sqlalchemy>=1.4"],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Web Environment",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python",
        "Programming Language :: Python :: 3",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],
)
