import codecs
import os
import setuptools


here = os.path.abspath(os.path.dirname(__file__))
readme = codecs.open(os.path.join(here, 'README.rst'), encoding='utf-8').read()
version = '0'  # set static for now

install_requires = [
    'acme>=4.0',
    'cryptography>=42',
    'josepy>=2.0',
    'pytz',
    'requests',
]

tests_require = [
    'pycodestyle',
    'pylint',
    'pytest',
]

setuptools.setup(
    name='letscert',
    version=version,
    author='Jakub Warmuz',
    author_email='jakub@warmuz.org',
    description="Let's Encrypt certificate client (http-01)",
    long_description=readme,
    license='GPLv3',
    py_modules=['letscert'],
    python_requires='>=3.8',
    install_requires=install_requires,
    extras_require={
        'tests': tests_require,
    },
    entry_points={
        'console_scripts': [
            'letscert = letscert:main',
        ],
    },
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Environment :: Console',
        'Intended Audience :: System Administrators',
        'License :: OSI Approved :: GNU General Public License v3 (GPLv3)',
        'Operating System :: POSIX :: Linux',
        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Topic :: Internet :: WWW/HTTP',
        'Topic :: Security',
        'Topic :: System :: Installation/Setup',
        'Topic :: System :: Networking',
        'Topic :: System :: Systems Administration',
        'Topic :: Utilities',
    ],
)
