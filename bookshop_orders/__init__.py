"""Bookshop Order Service: 注文確定・在庫減算・売上統計"""
