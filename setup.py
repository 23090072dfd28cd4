from setuptools import setup

setup(
    name='cf_lookup_route',
    version='0.1.0',
    description='Look up the org, space and app owning a Cloud Foundry route',
    long_description=open('README.md').read().strip(),
    long_description_content_type="text/markdown",
    license='Apache License Version 2.0',
    author='Adam Jaso',
    author_email='ajaso@hsdp.io',
    py_modules=['cf_lookup_route'],
    python_requires='>=3.6',
    install_requires=['requests>=2.22.0'],
    extras_require={
        'test': ['pytest', 'responses', 'coverage'],
    },
    entry_points={
        'console_scripts': ['cf-lookup-route=cf_lookup_route:run'],
    },
)
