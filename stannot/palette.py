"""
カラーパレット生成モジュール
乱数生成器を明示的に受け取り、同じシードとカテゴリ数から常に同じ色を生成する
"""

import numpy as np
import pandas as pd
from anndata import AnnData
from matplotlib.colors import hsv_to_rgb, to_hex
from typing import List, Optional, Tuple

from .utils import get_rng


def generate_palette(
    n: int,
    rng: Optional[np.random.Generator] = None,
    seed: Optional[int] = None,
    saturation: Tuple[float, float] = (0.45, 0.9),
    value: Tuple[float, float] = (0.6, 0.95)
) -> List[str]:
    """
    カテゴリ数 n のランダムなカラーパレットを生成

    色相は等間隔に配置し（開始位置はランダム）、順序をシャッフルする。
    彩度・明度は指定範囲から一様に選ぶ。

    Parameters
    ----------
    n : int
        色の数
    rng : np.random.Generator, optional
        乱数生成器
    seed : int, optional
        乱数シード（rng を指定しない場合に使用）
    saturation : tuple of float, default=(0.45, 0.9)
        彩度の範囲
    value : tuple of float, default=(0.6, 0.95)
        明度の範囲

    Returns
    -------
    colors : list of str
        16 進数のカラーコード（'#rrggbb'）
    """
    if n < 0:
        raise ValueError(f"n は 0 以上である必要があります: {n}")

    rng = get_rng(seed=seed, rng=rng)

    if n == 0:
        return []

    phase = rng.uniform(0, 1)
    hues = (phase + np.arange(n) / n) % 1.0
    hues = rng.permutation(hues)
    sats = rng.uniform(saturation[0], saturation[1], size=n)
    vals = rng.uniform(value[0], value[1], size=n)

    rgb = hsv_to_rgb(np.stack([hues, sats, vals], axis=1))

    return [to_hex(c) for c in rgb]


def set_palette(
    adata: AnnData,
    key: str,
    rng: Optional[np.random.Generator] = None,
    seed: Optional[int] = None
) -> List[str]:
    """
    adata.obs[key] のカテゴリにパレットを割り当て

    scanpy の規約に従い adata.uns[f'{key}_colors'] に保存する

    Returns
    -------
    colors : list of str
        カテゴリ順の色
    """
    if key not in adata.obs:
        raise ValueError(f"'{key}' not found in adata.obs")

    if not isinstance(adata.obs[key].dtype, pd.CategoricalDtype):
        adata.obs[key] = adata.obs[key].astype('category')

    n_categories = len(adata.obs[key].cat.categories)
    colors = generate_palette(n_categories, rng=rng, seed=seed)
    adata.uns[f'{key}_colors'] = colors

    print(f"パレットを設定しました: adata.uns['{key}_colors'] ({n_categories} 色)")

    return colors
