from setuptools import find_packages, setup

package_name = 'ransac_shapes'

setup(
    name=package_name,
    version='1.0.0',
    packages=find_packages(exclude=['test']),
    python_requires='>=3.8',
    install_requires=['setuptools', 'numpy', 'scipy'],
    extras_require={
        'test': ['pytest'],
    },
    zip_safe=True,
    maintainer='SAI ESWARA M',
    maintainer_email='saimurali2005@gmail.com',
    description='Multi-shape RANSAC detection of planes, spheres and cylinders in point clouds',
    license='MIT',
    entry_points={
        'console_scripts': [
            'ransac_shapes_demo = ransac_shapes.demo:main',
        ],
    },
)
