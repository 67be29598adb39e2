"""
テスト用のサンプルデータ生成スクリプト

ワークフローの動作確認用に、Visium / Xenium / triplet 形式の合成データと
外部アノテーション表（クラスタ・デコンボリューション・細胞型ラベル）を生成します。
"""

import argparse
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from stannot.datasets import (
    generate_synthetic_spatial_data,
    make_annotation_table,
    make_deconvolution_table,
    write_visium,
    write_xenium,
    write_triplets
)


def main(args):
    """メイン関数"""
    output_dir = Path(args.output)
    output_dir.mkdir(parents=True, exist_ok=True)

    print("\n" + "="*70)
    print("サンプルデータ生成")
    print("="*70 + "\n")

    # ========== スポットレベル（Visium）==========
    print("1. Visium（スポット）")
    spots = generate_synthetic_spatial_data(
        n_obs=args.n_spots,
        n_genes=args.n_genes,
        n_domains=5,
        prefix='Spot',
        seed=args.seed
    )
    write_visium(spots, output_dir / 'visium')

    clusters = make_annotation_table(spots, column='cluster', keep_fraction=0.9, seed=args.seed)
    clusters['cluster'] = clusters['cluster'].str.replace('Domain_', '', regex=False)
    clusters.to_csv(output_dir / 'visium_clusters.csv', index_label='barcode')

    proportions = make_deconvolution_table(spots, keep_fraction=1.0, seed=args.seed)
    proportions = proportions.loc[clusters.index]
    proportions.to_csv(output_dir / 'visium_deconvolution.csv', index_label='barcode')
    print(f"  - スポット数: {spots.n_obs}, クラスタ表: {len(clusters)} 行")

    # ========== 細胞レベル（Xenium / triplet）==========
    print("2. Xenium（細胞）")
    cells = generate_synthetic_spatial_data(
        n_obs=args.n_cells,
        n_genes=min(args.n_genes, 300),
        n_domains=6,
        grid_size=500,
        prefix='cell',
        label_prefix='CellType',
        seed=args.seed + 1
    )
    write_xenium(cells, output_dir / 'xenium')
    write_triplets(cells, output_dir / 'triplets')

    labels = make_annotation_table(
        cells, column='cell_type', keep_fraction=0.85, shuffle=True, seed=args.seed
    )
    labels.to_csv(output_dir / 'cell_types.csv', index_label='cell')
    print(f"  - 細胞数: {cells.n_obs}, ラベル表: {len(labels)} 行（行順はシャッフル）")

    print("="*70)
    print("サンプルデータ生成完了!")
    print(f"データは {output_dir} に保存されました")
    print("="*70 + "\n")

    print("使用例:")
    print(f"  python examples/example_run.py spot --data {output_dir}/visium "
          f"--annotation {output_dir}/visium_clusters.csv "
          f"--deconvolution {output_dir}/visium_deconvolution.csv --output results/spot")
    print(f"  python examples/example_run.py cell --data {output_dir}/xenium "
          f"--annotation {output_dir}/cell_types.csv --output results/cell")


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='サンプルデータ生成スクリプト')
    parser.add_argument('--output', type=str, default='./data',
                        help='出力ディレクトリ')
    parser.add_argument('--n-spots', type=int, default=1000,
                        help='スポット数')
    parser.add_argument('--n-cells', type=int, default=3000,
                        help='細胞数')
    parser.add_argument('--n-genes', type=int, default=500,
                        help='遺伝子数')
    parser.add_argument('--seed', type=int, default=0,
                        help='乱数シード')

    args = parser.parse_args()
    main(args)
