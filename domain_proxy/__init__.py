# -*- coding: utf-8 -*-
"""
@FileName    : __init__.py
@Author      : jiaxin
@Date        : 2026/10/12
@Time        : 10:01
@Description : 容器镜像注册表自定义域名反向代理
"""
__version__ = "0.1.0"
