"""
ワークフロー実行例

スポットレベル（Visium + 空間クラスタ / デコンボリューション）と
細胞レベル（Xenium / triplet + 細胞型ラベル）のワークフローを実行します。
"""

import argparse
from pathlib import Path

# stannot モジュールのインポート
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from stannot import spot_workflow, cell_workflow


def main(args):
    """
    フロー:
    1. データ読み込み
    2. 外部アノテーションの統合（キーの共通部分に絞り込み）
    3. 前処理・PCA / UMAP
    4. 可視化
    5. 結果保存
    """
    print(f"\n{'='*70}")
    print("実行開始")
    print(f"{'='*70}")
    print(f"モード: {args.mode}")
    print(f"入力ディレクトリ: {args.data}")
    print(f"アノテーション: {args.annotation}")
    print(f"出力ディレクトリ: {args.output}")
    print(f"{'='*70}\n")

    if args.mode == 'spot':
        adata = spot_workflow(
            args.data,
            args.annotation,
            deconvolution_path=args.deconvolution,
            cluster_column=args.column,
            order=args.order,
            img_key=None if args.img_key == 'none' else args.img_key,
            n_top_genes=args.n_hvgs,
            hvg_flavor=args.hvg_flavor,
            seed=args.seed,
            output_dir=args.output,
            show=args.show
        )
    else:
        adata = cell_workflow(
            args.data,
            args.annotation,
            label_column=args.column,
            reader=args.reader,
            order=args.order,
            n_top_genes=args.n_hvgs,
            hvg_flavor=args.hvg_flavor,
            seed=args.seed,
            output_dir=args.output,
            show=args.show
        )

    print(f"結果: {adata.n_obs} 件, {adata.n_vars} 遺伝子")
    print(f"結果は {args.output} に保存されました")


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='stannot 実行スクリプト')

    parser.add_argument('mode', choices=['spot', 'cell'],
                        help='spot: Visium, cell: イメージングベース')

    # 入出力
    parser.add_argument('--data', type=str, required=True,
                        help='入力ディレクトリ')
    parser.add_argument('--annotation', type=str, required=True,
                        help='外部アノテーション表（csv / tsv）')
    parser.add_argument('--deconvolution', type=str, default=None,
                        help='デコンボリューション結果の表（mode=spot のみ）')
    parser.add_argument('--column', type=str, default=None,
                        help='アノテーション列の名前（指定しない場合は最初の列）')
    parser.add_argument('--output', type=str, default='./results',
                        help='出力ディレクトリ')
    parser.add_argument('--reader', type=str, default='xenium',
                        choices=['xenium', 'triplets'],
                        help='細胞データの形式（mode=cell のみ）')

    # 統合
    parser.add_argument('--order', type=str, default='sort',
                        choices=['sort', 'strict'],
                        help='キー順序の検証方法')

    # 前処理
    parser.add_argument('--n-hvgs', type=int, default=2000,
                        help='HVG の数')
    parser.add_argument('--hvg-flavor', type=str, default='seurat_v3',
                        help='HVG 選択の手法')

    # 可視化
    parser.add_argument('--img-key', type=str, default='hires',
                        choices=['hires', 'lowres', 'none'],
                        help='背景画像（mode=spot のみ）')
    parser.add_argument('--show', action='store_true',
                        help='図を表示')

    # その他
    parser.add_argument('--seed', type=int, default=0,
                        help='乱数シード')

    args = parser.parse_args()
    main(args)
