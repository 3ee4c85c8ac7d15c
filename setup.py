"""
Setup script for Nexus - peer-to-peer and relay chat.

This package provides:
- Direct peer sessions over WebRTC data channels, negotiated by
  exchanging copy-pasteable connection codes (no signaling server)
- An authenticated relay room with a bounded shared history and friend codes
- An AI assistant that answers questions about the current conversation
"""

from setuptools import setup, find_packages
import os

this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='nexus-chat',
    version='1.0.0',
    description='Peer-to-peer chat over manually exchanged WebRTC codes, plus an authenticated relay room',
    long_description=long_description,
    long_description_content_type='text/markdown',
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: End Users/Desktop',
        'Topic :: Communications :: Chat',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Operating System :: OS Independent',
        'Environment :: Console',
    ],
    python_requires='>=3.10',
    install_requires=[
        'aiortc>=1.9.0',
        'cryptography>=42.0.4',
        'openai>=1.30.0',
        'tomli>=2.0.1; python_version<"3.11"',
    ],
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.23.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'nexus-relay=nexus.server:main',
        ],
    },
)
