"""
Setup script for Parley - Autonomous agent for end-to-end encrypted conversations.

Created by orpheus497

This agent provides:
- Local replica of every conversation of an inbox
- Real-time message stream with dedup, filtering and per-conversation ordering
- Group membership, role and metadata rules enforced before any network call
- Matrix homeserver transport
- Encrypted local identity
"""

from setuptools import setup, find_packages
import os

this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='parley-agent',
    version='1.0.0',
    author='orpheus497',
    description='An autonomous agent for decentralized end-to-end encrypted conversations',
    long_description=long_description,
    long_description_content_type='text/markdown',
    url='https://github.com/orpheus497/parley',
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'Topic :: Communications :: Chat',
        'Topic :: Security :: Cryptography',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Operating System :: OS Independent',
        'Environment :: Console',
        'Framework :: AsyncIO',
    ],
    python_requires='>=3.11',
    install_requires=[
        'cryptography>=42.0.4',
        'argon2-cffi>=23.1.0',
        'rich>=13.7.0',
        'aiofiles>=23.2.1',
        'matrix-nio>=0.24.0',
        'aiohttp>=3.9.0',
    ],
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.23.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'parley=parley.main:main',
        ],
    },
)
