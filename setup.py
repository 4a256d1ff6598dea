"""
Setup script for SparkChat - End-to-end encrypted group chat over MQTT.

This client provides:
- Per-recipient ECDH P-256 + AES-256-GCM encryption
- Public key exchange over the broker (no central directory)
- Delivery receipts and typing indicators
- Works with any MQTT broker (TCP, TLS or WebSockets)
"""

from setuptools import setup, find_packages
import os

this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='sparkchat',
    version='1.0.0',
    author='sparkchat contributors',
    description='End-to-end encrypted group chat over an MQTT publish/subscribe broker',
    long_description=long_description,
    long_description_content_type='text/markdown',
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: End Users/Desktop',
        'Topic :: Communications :: Chat',
        'Topic :: Security :: Cryptography',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Operating System :: OS Independent',
        'Environment :: Console',
    ],
    python_requires='>=3.9',
    install_requires=[
        'cryptography>=42.0.4',
        'paho-mqtt>=2.0.0',
        'aiofiles>=23.2.1',
        'rich>=13.7.0',
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
            'sparkchat=sparkchat.main:main',
        ],
    },
)
