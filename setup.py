import setuptools

setuptools.setup(
    name='apipe',
    description='anonymous pipes of child processes, like a | b | c',
    long_description=open("README.md").read(),
    long_description_content_type='text/markdown',
    license='MIT',
    version='0.2.0',
    py_modules=['apipe'],
    python_requires='>=3.6',
    extras_require={
        'test': ['pytest', 'flake8', 'black'],
        'docs': ['sphinx'],
    },
)
