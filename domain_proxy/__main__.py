# -*- coding: utf-8 -*-
"""
@FileName    : __main__.py
@Author      : jiaxin
@Date        : 2026/10/19
@Time        : 15:40
@Description : python -m domain_proxy
"""
from .cli import main

main()
